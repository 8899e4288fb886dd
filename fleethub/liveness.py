from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fleethub.schemas.objects import ConditionType, JoinClusterSpec


@dataclass(frozen=True)
class LivenessThresholds:
    stale_after: timedelta
    disconnect_after: timedelta


def resolve_thresholds(
    spec: JoinClusterSpec,
    *,
    default_stale_seconds: int,
    default_disconnect_seconds: int,
) -> LivenessThresholds:
    stale = spec.stale_duration or timedelta(seconds=default_stale_seconds)
    disconnect = spec.disconnect_duration or timedelta(seconds=default_disconnect_seconds)
    return LivenessThresholds(stale_after=stale, disconnect_after=disconnect)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def classify(
    now: datetime,
    last_update_time: datetime,
    thresholds: LivenessThresholds,
) -> Optional[ConditionType]:
    """Return the liveness condition to apply, or None while the agent is fresh.

    Both boundaries are inclusive: exactly ``stale_after`` is stale and exactly
    ``disconnect_after`` is disconnected. Disconnect is checked first so a
    stale threshold at or above the disconnect threshold never masks it.
    """
    elapsed = as_utc(now) - as_utc(last_update_time)
    if elapsed >= thresholds.disconnect_after:
        return ConditionType.AGENT_DISCONNECTED
    if elapsed >= thresholds.stale_after:
        return ConditionType.AGENT_STALE
    return None
