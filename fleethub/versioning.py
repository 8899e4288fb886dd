from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

_VERSION_FILE_ENV = "FLEETHUB_VERSION_FILE"
_DEFAULT_CHANNEL = "stable"


@dataclass(frozen=True)
class VersionInfo:
    manifest_version: str
    hub_version: str
    channel: str
    agent_version: str
    agent_image: str
    source_path: str


def _as_non_empty_str(value: object) -> str:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped:
            return stripped
    return ""


def _candidate_paths() -> list[Path]:
    candidates: list[Path] = []
    env_path = os.getenv(_VERSION_FILE_ENV, "").strip()
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(Path.cwd() / "version.json")
    candidates.append(Path(__file__).resolve().parent.parent / "version.json")
    return candidates


def _resolve_version_file() -> Path:
    for candidate in _candidate_paths():
        if candidate.exists() and candidate.is_file():
            return candidate
    raise FileNotFoundError(
        f"Unable to locate version.json. Set {_VERSION_FILE_ENV} to an explicit path."
    )


def load_version_info(channel: str = _DEFAULT_CHANNEL) -> VersionInfo:
    version_file = _resolve_version_file()
    try:
        raw = json.loads(version_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {version_file}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ValueError(f"Invalid version manifest in {version_file}: expected an object.")

    manifest_version = _as_non_empty_str(raw.get("version"))
    channel_data: Dict[str, Any] = {}
    channels = raw.get("channels")
    if isinstance(channels, dict) and isinstance(channels.get(channel), dict):
        channel_data = channels[channel]

    hub_version = _as_non_empty_str(channel_data.get("version")) or manifest_version
    if not hub_version:
        raise ValueError(f"Missing version in {version_file}. Expected top-level or channel version.")

    agent_data = channel_data.get("agent")
    if not isinstance(agent_data, dict):
        agent_data = {}

    return VersionInfo(
        manifest_version=manifest_version or hub_version,
        hub_version=hub_version,
        channel=channel,
        agent_version=_as_non_empty_str(agent_data.get("version")) or hub_version,
        agent_image=_as_non_empty_str(agent_data.get("image")),
        source_path=str(version_file),
    )


@lru_cache
def get_version_info() -> VersionInfo:
    return load_version_info()


def agent_version() -> str:
    try:
        return get_version_info().agent_version
    except (FileNotFoundError, ValueError):
        return "0.0.0"
