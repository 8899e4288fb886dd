"""Condition bookkeeping for JoinCluster status.

The three liveness conditions (AgentConnected, AgentStale, AgentDisconnected)
are independent records rather than one enum field; ``apply_transition`` keeps
them mutually exclusive. ReadyToJoin is a latch that nothing here clears.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from fleethub.schemas.objects import (
    Condition,
    ConditionStatus,
    ConditionType,
    JoinClusterStatus,
)

_TRANSITIONS: Dict[ConditionType, Tuple[Tuple[ConditionType, ...], str]] = {
    ConditionType.AGENT_DISCONNECTED: (
        (ConditionType.AGENT_STALE, ConditionType.AGENT_CONNECTED),
        "DisconnectTimerExpired",
    ),
    ConditionType.AGENT_STALE: (
        (ConditionType.AGENT_DISCONNECTED, ConditionType.AGENT_CONNECTED),
        "StaleTimerExpired",
    ),
    ConditionType.AGENT_CONNECTED: (
        (ConditionType.AGENT_STALE, ConditionType.AGENT_DISCONNECTED),
        "AgentConnected",
    ),
    ConditionType.READY_TO_JOIN: ((), "AgentReadyToJoin"),
}

LIVENESS_CONDITIONS = (
    ConditionType.AGENT_CONNECTED,
    ConditionType.AGENT_STALE,
    ConditionType.AGENT_DISCONNECTED,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_condition(status: JoinClusterStatus, condition_type: ConditionType) -> Optional[Condition]:
    for condition in status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def has_condition(status: JoinClusterStatus, condition_type: ConditionType) -> bool:
    return find_condition(status, condition_type) is not None


def is_condition_true(status: JoinClusterStatus, condition_type: ConditionType) -> bool:
    condition = find_condition(status, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def _write(
    status: JoinClusterStatus,
    condition_type: ConditionType,
    value: ConditionStatus,
    reason: str,
    *,
    now: datetime,
    message: Optional[str],
    create: bool,
) -> None:
    condition = find_condition(status, condition_type)
    if condition is None:
        if create:
            status.conditions.append(
                Condition(
                    type=condition_type,
                    status=value,
                    last_transition_time=now,
                    reason=reason,
                    message=message,
                )
            )
        return
    if condition.status != value:
        condition.last_transition_time = now
    condition.status = value
    condition.reason = reason
    if message is not None:
        condition.message = message


def set_condition(
    status: JoinClusterStatus,
    condition_type: ConditionType,
    reason: str,
    *,
    now: Optional[datetime] = None,
    message: Optional[str] = None,
) -> None:
    _write(
        status,
        condition_type,
        ConditionStatus.TRUE,
        reason,
        now=now or _utcnow(),
        message=message,
        create=True,
    )


def clear_condition(
    status: JoinClusterStatus,
    condition_type: ConditionType,
    reason: str,
    *,
    now: Optional[datetime] = None,
) -> None:
    # Clearing a condition that was never set leaves the list untouched.
    _write(
        status,
        condition_type,
        ConditionStatus.FALSE,
        reason,
        now=now or _utcnow(),
        message=None,
        create=False,
    )


def apply_transition(
    status: JoinClusterStatus,
    target: ConditionType,
    *,
    now: Optional[datetime] = None,
    message: Optional[str] = None,
) -> None:
    current = now or _utcnow()
    cleared, reason = _TRANSITIONS[target]
    for condition_type in cleared:
        clear_condition(status, condition_type, target.value, now=current)
    set_condition(status, target, reason, now=current, message=message)
