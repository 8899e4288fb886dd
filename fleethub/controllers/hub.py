"""JoinCluster reconciliation on the hub.

One pass moves a JoinCluster through finalizer registration, credential
provisioning and liveness classification, or tears its credentials down once
it is marked for deletion. Passes for one key never overlap; the work loop
guarantees that, so nothing here locks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from fleethub.conditions import apply_transition, find_condition, is_condition_true
from fleethub.config import Settings
from fleethub.errors import NotFoundError
from fleethub.liveness import LivenessThresholds, as_utc, classify, resolve_thresholds
from fleethub.logger import get_logger
from fleethub.schemas.objects import ConditionType, JoinCluster
from fleethub.services.provisioner import CredentialProvisioner
from fleethub.store import ObjectStore, object_key

_logger = get_logger("controllers.hub")

JOIN_FINALIZER = "fleethub.io/join-cleanup"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: Optional[float] = None


def _next_check_seconds(now: datetime, last_update_time: datetime, thresholds: LivenessThresholds) -> Optional[float]:
    elapsed = as_utc(now) - as_utc(last_update_time)
    for boundary in (thresholds.stale_after, thresholds.disconnect_after):
        if elapsed < boundary:
            return max((boundary - elapsed).total_seconds(), 0.0)
    return None


class HubReconciler:
    def __init__(
        self,
        store: ObjectStore,
        provisioner: CredentialProvisioner,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._provisioner = provisioner
        self._settings = settings
        self._clock = clock or _utcnow

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        key = object_key(namespace, name)
        try:
            join = await self._store.get(JoinCluster, namespace, name)
        except NotFoundError:
            _logger.debug("reconcile.gone", "JoinCluster no longer exists", join_cluster=key)
            return ReconcileResult()

        if join.is_deleting:
            await self._finalize(join)
            return ReconcileResult()

        if JOIN_FINALIZER not in join.metadata.finalizers:
            join.metadata.finalizers.append(JOIN_FINALIZER)
            join = await self._store.update(join)
            _logger.info("reconcile.finalizer", "Registered cleanup finalizer", join_cluster=key)

        if not is_condition_true(join.status, ConditionType.READY_TO_JOIN):
            await self._provision(join)
            return ReconcileResult()

        return await self._check_liveness(join)

    async def _finalize(self, join: JoinCluster) -> None:
        key = object_key(join.namespace, join.name)
        if JOIN_FINALIZER not in join.metadata.finalizers:
            return
        await self._provisioner.cleanup(join)
        join.metadata.finalizers = [item for item in join.metadata.finalizers if item != JOIN_FINALIZER]
        await self._store.update(join)
        _logger.info("reconcile.finalized", "Cleaned up join credentials and released finalizer", join_cluster=key)

    async def _provision(self, join: JoinCluster) -> None:
        result = await self._provisioner.provision(join)
        join.status.identity_name = result.identity_name
        join.status.join_command = result.join_command
        apply_transition(join.status, ConditionType.READY_TO_JOIN, now=self._clock())
        await self._store.update_status(join)
        _logger.info(
            "reconcile.ready",
            "JoinCluster is ready to join",
            join_cluster=object_key(join.namespace, join.name),
            identity=result.identity_name,
        )

    async def _check_liveness(self, join: JoinCluster) -> ReconcileResult:
        agent_info = join.status.agent_info
        if agent_info is None:
            return ReconcileResult()

        thresholds = resolve_thresholds(
            join.spec,
            default_stale_seconds=self._settings.hub_default_stale_seconds,
            default_disconnect_seconds=self._settings.hub_default_disconnect_seconds,
        )
        now = self._clock()
        target = classify(now, agent_info.last_update_time, thresholds)
        if target is not None:
            before = join.status.model_dump()
            apply_transition(join.status, target, now=now)
            if join.status.model_dump() != before:
                await self._store.update_status(join)
                condition = find_condition(join.status, target)
                _logger.warning(
                    "reconcile.liveness",
                    "Agent heartbeat overdue",
                    join_cluster=object_key(join.namespace, join.name),
                    condition=target.value,
                    since=condition.last_transition_time if condition else None,
                    last_update_time=agent_info.last_update_time.isoformat(),
                )
        return ReconcileResult(requeue_after=_next_check_seconds(now, agent_info.last_update_time, thresholds))
