from __future__ import annotations

import random
from datetime import timedelta

import pytest

from fleethub.conditions import (
    LIVENESS_CONDITIONS,
    apply_transition,
    clear_condition,
    find_condition,
    has_condition,
    is_condition_true,
    set_condition,
)
from fleethub.schemas.objects import ConditionStatus, ConditionType, JoinClusterStatus
from tests.helpers import T0


def test_set_appends_new_condition_with_transition_time() -> None:
    status = JoinClusterStatus()
    set_condition(status, ConditionType.READY_TO_JOIN, "AgentReadyToJoin", now=T0)

    condition = find_condition(status, ConditionType.READY_TO_JOIN)
    assert condition is not None
    assert condition.status == ConditionStatus.TRUE
    assert condition.last_transition_time == T0
    assert condition.reason == "AgentReadyToJoin"


def test_set_existing_true_keeps_transition_time() -> None:
    status = JoinClusterStatus()
    set_condition(status, ConditionType.AGENT_CONNECTED, "first", now=T0)
    set_condition(status, ConditionType.AGENT_CONNECTED, "second", now=T0 + timedelta(seconds=5))

    condition = find_condition(status, ConditionType.AGENT_CONNECTED)
    assert condition is not None
    assert condition.last_transition_time == T0
    assert condition.reason == "second"
    assert len(status.conditions) == 1


def test_clear_missing_condition_is_a_noop() -> None:
    status = JoinClusterStatus()
    clear_condition(status, ConditionType.AGENT_STALE, "AgentConnected", now=T0)
    assert status.conditions == []
    assert not has_condition(status, ConditionType.AGENT_STALE)


def test_clear_flips_status_and_advances_time_once() -> None:
    status = JoinClusterStatus()
    set_condition(status, ConditionType.AGENT_STALE, "StaleTimerExpired", now=T0)
    later = T0 + timedelta(seconds=10)
    clear_condition(status, ConditionType.AGENT_STALE, "AgentConnected", now=later)
    clear_condition(status, ConditionType.AGENT_STALE, "AgentConnected", now=later + timedelta(seconds=10))

    condition = find_condition(status, ConditionType.AGENT_STALE)
    assert condition is not None
    assert condition.status == ConditionStatus.FALSE
    assert condition.last_transition_time == later


@pytest.mark.parametrize(
    ("target", "others"),
    [
        (ConditionType.AGENT_CONNECTED, (ConditionType.AGENT_STALE, ConditionType.AGENT_DISCONNECTED)),
        (ConditionType.AGENT_STALE, (ConditionType.AGENT_CONNECTED, ConditionType.AGENT_DISCONNECTED)),
        (ConditionType.AGENT_DISCONNECTED, (ConditionType.AGENT_CONNECTED, ConditionType.AGENT_STALE)),
    ],
)
def test_liveness_transitions_are_mutually_exclusive(
    target: ConditionType,
    others: tuple[ConditionType, ...],
) -> None:
    status = JoinClusterStatus()
    for condition_type in LIVENESS_CONDITIONS:
        set_condition(status, condition_type, "seed", now=T0)

    apply_transition(status, target, now=T0 + timedelta(seconds=1))

    assert is_condition_true(status, target)
    for other in others:
        condition = find_condition(status, other)
        assert condition is not None
        assert condition.status == ConditionStatus.FALSE
        assert condition.reason == target.value


def test_transition_leaves_absent_conditions_absent() -> None:
    status = JoinClusterStatus()
    apply_transition(status, ConditionType.AGENT_STALE, now=T0)

    assert is_condition_true(status, ConditionType.AGENT_STALE)
    assert not has_condition(status, ConditionType.AGENT_CONNECTED)
    assert not has_condition(status, ConditionType.AGENT_DISCONNECTED)


def test_ready_to_join_survives_liveness_transitions() -> None:
    status = JoinClusterStatus()
    apply_transition(status, ConditionType.READY_TO_JOIN, now=T0)
    for target in (
        ConditionType.AGENT_CONNECTED,
        ConditionType.AGENT_STALE,
        ConditionType.AGENT_DISCONNECTED,
        ConditionType.AGENT_CONNECTED,
    ):
        apply_transition(status, target, now=T0)
    assert is_condition_true(status, ConditionType.READY_TO_JOIN)


def test_random_sequences_keep_one_record_per_type_and_honest_times() -> None:
    rng = random.Random(20260101)
    types = list(ConditionType)
    status = JoinClusterStatus()
    now = T0

    for _ in range(500):
        now = now + timedelta(seconds=1)
        condition_type = rng.choice(types)
        before = find_condition(status, condition_type)
        before_state = (before.status, before.last_transition_time) if before else None

        if rng.random() < 0.5:
            set_condition(status, condition_type, "set", now=now)
            expected = ConditionStatus.TRUE
        else:
            clear_condition(status, condition_type, "clear", now=now)
            expected = ConditionStatus.FALSE

        after = find_condition(status, condition_type)
        kinds = [condition.type for condition in status.conditions]
        assert len(kinds) == len(set(kinds))

        if before_state is None:
            if expected == ConditionStatus.TRUE:
                assert after is not None and after.last_transition_time == now
            else:
                assert after is None
            continue

        assert after is not None
        flipped = before_state[0] != expected
        assert (after.last_transition_time != before_state[1]) == flipped
