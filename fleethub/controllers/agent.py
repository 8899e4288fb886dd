from __future__ import annotations

import asyncio
import platform
import shlex
import socket
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from fleethub.conditions import apply_transition
from fleethub.config import Settings
from fleethub.errors import BootstrapConfigError
from fleethub.hub_client import HubClient
from fleethub.logger import get_logger
from fleethub.metrics import record_heartbeat
from fleethub.schemas.objects import AgentInfo, ConditionType, JoinCluster
from fleethub.store import object_key, retry_on_conflict
from fleethub.versioning import agent_version as default_agent_version

_logger = get_logger("controllers.agent")

AGENT_CONNECTED_MESSAGE = "Spoke agent successfully connected to hub"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JoinCoordinates:
    server: str
    name: str
    namespace: str
    ca_bundle: bytes
    token: str


def _read_required(directory: Path, key: str) -> bytes:
    path = directory / key
    try:
        value = path.read_bytes()
    except OSError as exc:
        raise BootstrapConfigError(f"Missing bootstrap value {path}: {exc}") from exc
    if not value.strip():
        raise BootstrapConfigError(f"Bootstrap value {path} is empty")
    return value


def _read_text(directory: Path, key: str) -> str:
    return _read_required(directory, key).decode("utf-8").strip()


def load_join_coordinates(config_dir: str, secret_dir: str) -> JoinCoordinates:
    config_path = Path(config_dir)
    secret_path = Path(secret_dir)
    return JoinCoordinates(
        server=_read_text(config_path, "server"),
        name=_read_text(config_path, "joinClusterName"),
        namespace=_read_text(config_path, "joinClusterNamespace"),
        ca_bundle=_read_required(secret_path, "caBundle"),
        token=_read_text(secret_path, "token"),
    )


@dataclass(frozen=True)
class ClusterFacts:
    cluster_name: str
    cluster_version: str
    node_count: int


class ClusterFactsCollector(Protocol):
    async def collect(self) -> ClusterFacts: ...


def _run_command(cmd: Sequence[str]) -> tuple[int, str, str]:
    try:
        process = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        return 127, "", str(exc)
    return process.returncode, process.stdout.strip(), process.stderr.strip()


class LocalClusterFacts:
    def __init__(
        self,
        *,
        cluster_name: str = "",
        cluster_version: str = "",
        node_count_command: str = "",
        static_node_count: int = 1,
    ) -> None:
        self._cluster_name = cluster_name
        self._cluster_version = cluster_version
        self._node_count_command = node_count_command
        self._static_node_count = static_node_count

    async def collect(self) -> ClusterFacts:
        return await asyncio.to_thread(self._collect)

    def _collect(self) -> ClusterFacts:
        return ClusterFacts(
            cluster_name=self._cluster_name or socket.gethostname(),
            cluster_version=self._cluster_version or platform.platform(),
            node_count=self._node_count(),
        )

    def _node_count(self) -> int:
        if not self._node_count_command:
            return self._static_node_count
        code, stdout, stderr = _run_command(shlex.split(self._node_count_command))
        if code != 0:
            _logger.warning(
                "agent.facts.node_count_failed",
                "Node count command failed; using static count",
                exit_code=code,
                stderr=stderr,
            )
            return self._static_node_count
        return len([line for line in stdout.splitlines() if line.strip()])


class HeartbeatReporter:
    def __init__(
        self,
        client: HubClient,
        coordinates: JoinCoordinates,
        facts: ClusterFactsCollector,
        *,
        interval: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
        agent_version: str = "",
        agent_image: str = "",
        conflict_retries: int = 3,
    ) -> None:
        self._client = client
        self._coordinates = coordinates
        self._facts = facts
        self._interval = interval
        self._clock = clock
        self._agent_version = agent_version or default_agent_version()
        self._agent_image = agent_image
        self._conflict_retries = conflict_retries
        self._stop = asyncio.Event()

    @property
    def key(self) -> str:
        return object_key(self._coordinates.namespace, self._coordinates.name)

    async def _report(self) -> Optional[JoinCluster]:
        join = await self._client.get_join_cluster(self._coordinates.namespace, self._coordinates.name)
        if join.name != self._coordinates.name:
            _logger.warning(
                "agent.heartbeat.skip",
                "Hub returned a different JoinCluster; skipping heartbeat",
                expected=self._coordinates.name,
                received=join.name,
            )
            return None

        facts = await self._facts.collect()
        now = self._clock()
        apply_transition(
            join.status,
            ConditionType.AGENT_CONNECTED,
            now=now,
            message=AGENT_CONNECTED_MESSAGE,
        )
        join.status.agent_info = AgentInfo(
            version=self._agent_version,
            image=self._agent_image,
            cluster_name=facts.cluster_name,
            cluster_version=facts.cluster_version,
            node_count=facts.node_count,
            last_update_time=now,
        )
        return await self._client.update_join_cluster_status(join)

    async def report_once(self) -> Optional[JoinCluster]:
        """Send one heartbeat, re-reading and retrying when the status write conflicts."""
        return await retry_on_conflict(self._report, attempts=self._conflict_retries)

    async def run(self) -> None:
        self._stop.clear()
        _logger.info(
            "agent.start",
            "Started heartbeat reporter",
            join_cluster=self.key,
            server=self._client.server,
            interval_seconds=self._interval,
        )
        while not self._stop.is_set():
            try:
                updated = await self.report_once()
                record_heartbeat(ok=True)
                if updated is not None:
                    _logger.debug(
                        "agent.heartbeat",
                        "Reported heartbeat",
                        join_cluster=self.key,
                        resource_version=updated.metadata.resource_version,
                    )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_heartbeat(ok=False)
                _logger.warning(
                    "agent.heartbeat.error",
                    "Heartbeat failed; retrying next interval",
                    join_cluster=self.key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except TimeoutError:
                continue
        _logger.info("agent.stop", "Stopped heartbeat reporter", join_cluster=self.key)

    def stop(self) -> None:
        self._stop.set()


def build_reporter(settings: Settings) -> HeartbeatReporter:
    bootstrap = Path(settings.agent_bootstrap_dir)
    coordinates = load_join_coordinates(str(bootstrap / "config"), str(bootstrap / "secret"))
    client = HubClient(
        coordinates.server,
        token=coordinates.token,
        ca_bundle=coordinates.ca_bundle,
        timeout_seconds=settings.agent_request_timeout_seconds,
    )
    facts = LocalClusterFacts(
        cluster_name=settings.agent_cluster_name,
        cluster_version=settings.agent_cluster_version,
        node_count_command=settings.agent_node_count_command,
        static_node_count=settings.agent_static_node_count,
    )
    return HeartbeatReporter(
        client,
        coordinates,
        facts,
        interval=settings.agent_heartbeat_interval_seconds,
        agent_image=settings.agent_image,
        conflict_retries=settings.agent_conflict_retries,
    )
