from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleethub.errors import AlreadyExistsError, ConflictError, NotFoundError
from fleethub.schemas.objects import ConditionType, Identity, JoinCluster, ObjectMeta, Secret
from fleethub.conditions import apply_transition, is_condition_true
from fleethub.services.events import list_events
from fleethub.store import ObjectStore, retry_on_conflict
from tests.helpers import T0, make_join


@pytest.mark.asyncio
async def test_create_assigns_metadata(store: ObjectStore) -> None:
    created = await store.create(make_join(stale_duration=timedelta(seconds=10)))

    assert created.metadata.resource_version == 1
    assert created.metadata.uid
    assert created.metadata.creation_timestamp == T0
    assert created.spec.stale_duration == timedelta(seconds=10)

    fetched = await store.get(JoinCluster, "default", "cluster-a")
    assert fetched.metadata.uid == created.metadata.uid
    assert fetched.spec.stale_duration == timedelta(seconds=10)


@pytest.mark.asyncio
async def test_create_duplicate_raises(store: ObjectStore) -> None:
    await store.create(make_join())
    with pytest.raises(AlreadyExistsError):
        await store.create(make_join())


@pytest.mark.asyncio
async def test_get_missing_raises(store: ObjectStore) -> None:
    with pytest.raises(NotFoundError):
        await store.get(JoinCluster, "default", "missing")


@pytest.mark.asyncio
async def test_stale_write_conflicts(store: ObjectStore) -> None:
    created = await store.create(make_join())
    first = created.model_copy(deep=True)
    second = created.model_copy(deep=True)

    first.metadata.labels["env"] = "prod"
    updated = await store.update(first)
    assert updated.metadata.resource_version == 2

    second.metadata.labels["env"] = "dev"
    with pytest.raises(ConflictError):
        await store.update(second)

    apply_transition(second.status, ConditionType.READY_TO_JOIN, now=T0)
    with pytest.raises(ConflictError):
        await store.update_status(second)


@pytest.mark.asyncio
async def test_update_ignores_status_and_update_status_ignores_spec(store: ObjectStore) -> None:
    created = await store.create(make_join())

    created.status.join_command = "ignored"
    created.metadata.finalizers.append("example.io/hold")
    updated = await store.update(created)
    assert updated.status.join_command is None
    assert updated.metadata.finalizers == ["example.io/hold"]

    updated.metadata.finalizers = []
    updated.spec.identity_name = "ignored"
    updated.status.join_command = "echo join"
    status_written = await store.update_status(updated)
    assert status_written.status.join_command == "echo join"
    assert status_written.metadata.finalizers == ["example.io/hold"]
    assert status_written.spec.identity_name is None
    assert status_written.metadata.resource_version == 3


@pytest.mark.asyncio
async def test_update_of_missing_object_raises_not_found(store: ObjectStore) -> None:
    created = await store.create(make_join())
    await store.delete(JoinCluster, "default", "cluster-a")
    with pytest.raises(NotFoundError):
        await store.update(created)


@pytest.mark.asyncio
async def test_delete_without_finalizers_removes(store: ObjectStore) -> None:
    await store.create(make_join())
    assert await store.delete(JoinCluster, "default", "cluster-a") is None
    with pytest.raises(NotFoundError):
        await store.get(JoinCluster, "default", "cluster-a")
    with pytest.raises(NotFoundError):
        await store.delete(JoinCluster, "default", "cluster-a")


@pytest.mark.asyncio
async def test_finalizer_gates_physical_deletion(store: ObjectStore, clock) -> None:
    join = make_join()
    join.metadata.finalizers = ["fleethub.io/join-cleanup"]
    await store.create(join)

    clock.advance(5)
    marked = await store.delete(JoinCluster, "default", "cluster-a")
    assert marked is not None
    assert marked.is_deleting
    assert marked.metadata.deletion_timestamp == T0 + timedelta(seconds=5)
    assert marked.metadata.resource_version == 2

    clock.advance(5)
    again = await store.delete(JoinCluster, "default", "cluster-a")
    assert again is not None
    assert again.metadata.deletion_timestamp == marked.metadata.deletion_timestamp
    assert again.metadata.resource_version == 2

    again.metadata.deletion_timestamp = None
    again.metadata.labels["still"] = "here"
    kept = await store.update(again)
    assert kept.is_deleting

    kept.metadata.finalizers = []
    await store.update(kept)
    with pytest.raises(NotFoundError):
        await store.get(JoinCluster, "default", "cluster-a")


@pytest.mark.asyncio
async def test_list_filters_and_orders(store: ObjectStore) -> None:
    for namespace, name, labels in (
        ("team-b", "beta", {"env": "prod"}),
        ("team-a", "zeta", {"env": "dev"}),
        ("team-a", "alpha", {"env": "prod"}),
    ):
        join = make_join(name=name, namespace=namespace)
        join.metadata.labels = labels
        await store.create(join)

    everything = await store.list(JoinCluster)
    assert [(j.namespace, j.name) for j in everything] == [
        ("team-a", "alpha"),
        ("team-a", "zeta"),
        ("team-b", "beta"),
    ]
    team_a = await store.list(JoinCluster, namespace="team-a")
    assert [j.name for j in team_a] == ["alpha", "zeta"]
    prod = await store.list(JoinCluster, labels={"env": "prod"})
    assert [j.name for j in prod] == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_other_kinds_round_trip(store: ObjectStore) -> None:
    identity = await store.create(Identity(metadata=ObjectMeta(name="cluster-a-identity")))
    identity.secrets = ["cluster-a-identity-token-abcde"]
    identity = await store.update(identity)
    assert (await store.get(Identity, "default", "cluster-a-identity")).secrets == identity.secrets

    secret = Secret(metadata=ObjectMeta(name="bundle"), type="join-bundle")
    secret.set_value("token", b"t0ken")
    await store.create(secret)
    fetched = await store.get(Secret, "default", "bundle")
    assert fetched.type == "join-bundle"
    assert fetched.value("token") == b"t0ken"
    assert fetched.value("missing") == b""


@pytest.mark.asyncio
async def test_join_cluster_lifecycle_is_audited(
    store: ObjectStore,
    sessionmaker: async_sessionmaker[AsyncSession],
) -> None:
    join = make_join()
    join.metadata.finalizers = ["fleethub.io/join-cleanup"]
    await store.create(join)
    marked = await store.delete(JoinCluster, "default", "cluster-a")
    assert marked is not None
    marked.metadata.finalizers = []
    await store.update(marked)

    async with sessionmaker() as session:
        events = await list_events(session, object_key="default/cluster-a")
    assert sorted(event.name for event in events) == [
        "object.create",
        "object.delete_requested",
        "object.finalized",
    ]


@pytest.mark.asyncio
async def test_retry_on_conflict_rereads(store: ObjectStore) -> None:
    await store.create(make_join())
    stale = await store.get(JoinCluster, "default", "cluster-a")
    fresh = await store.get(JoinCluster, "default", "cluster-a")
    fresh.metadata.labels["bumped"] = "yes"
    await store.update(fresh)

    attempts = []

    async def mark_ready() -> JoinCluster:
        current = stale if not attempts else await store.get(JoinCluster, "default", "cluster-a")
        attempts.append(current.metadata.resource_version)
        apply_transition(current.status, ConditionType.READY_TO_JOIN, now=T0)
        return await store.update_status(current)

    result = await retry_on_conflict(mark_ready, attempts=3)
    assert attempts == [1, 2]
    assert is_condition_true(result.status, ConditionType.READY_TO_JOIN)


@pytest.mark.asyncio
async def test_retry_on_conflict_gives_up(store: ObjectStore) -> None:
    calls = []

    async def always_conflicts() -> None:
        calls.append(1)
        raise ConflictError("JoinCluster", "default", "cluster-a")

    with pytest.raises(ConflictError):
        await retry_on_conflict(always_conflicts, attempts=3)
    assert len(calls) == 3
