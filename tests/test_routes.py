from __future__ import annotations

from typing import AsyncIterator, List, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleethub.config import Settings, get_settings
from fleethub.dependencies import get_db_session, get_runtime, get_store
from fleethub.identity import create_identity_token
from fleethub.main import app
from fleethub.routes import system as system_routes
from fleethub.schemas.objects import JoinCluster, ObjectMeta, Secret
from fleethub.store import ObjectStore


class RecordingRuntime:
    def __init__(self) -> None:
        self.enqueued: List[Tuple[str, str]] = []

    def enqueue(self, namespace: str, name: str) -> None:
        self.enqueued.append((namespace, name))


@pytest.fixture
def runtime() -> RecordingRuntime:
    return RecordingRuntime()


@pytest_asyncio.fixture
async def client(
    store: ObjectStore,
    sessionmaker: async_sessionmaker[AsyncSession],
    settings: Settings,
    runtime: RecordingRuntime,
) -> AsyncIterator[httpx.AsyncClient]:
    async def session_override() -> AsyncIterator[AsyncSession]:
        async with sessionmaker() as session:
            yield session

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_db_session] = session_override
    app.dependency_overrides[get_runtime] = lambda: runtime
    app.dependency_overrides[get_settings] = lambda: settings
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            yield http
    finally:
        app.dependency_overrides.clear()


def _bearer(settings: Settings, identity: str, namespace: str = "default") -> dict:
    token = create_identity_token(
        identity_name=identity,
        namespace=namespace,
        secret_key=settings.hub_identity_signing_key,
        ttl_seconds=300,
    )
    return {"Authorization": f"Bearer {token}"}


async def _assigned_join(store: ObjectStore) -> JoinCluster:
    join = await store.create(JoinCluster(metadata=ObjectMeta(name="cluster-a")))
    join.status.identity_name = "cluster-a-identity"
    return await store.update_status(join)


def _heartbeat_status(join: JoinCluster) -> dict:
    status = join.status.model_dump(mode="json")
    status["conditions"] = [
        {
            "type": "AgentConnected",
            "status": "True",
            "reason": "AgentConnected",
            "message": "Spoke agent successfully connected to hub",
            "last_transition_time": "2026-01-01T12:00:00Z",
        }
    ]
    status["agent_info"] = {
        "version": "0.1.0",
        "image": "ghcr.io/fleethub/agent:0.1.0",
        "cluster_name": "spoke-a",
        "cluster_version": "v1.30.2",
        "node_count": 3,
        "last_update_time": "2026-01-01T12:00:00Z",
    }
    return status


@pytest.mark.asyncio
async def test_create_get_and_list(client: httpx.AsyncClient, runtime: RecordingRuntime) -> None:
    response = await client.post(
        "/join-clusters",
        json={"name": "cluster-a", "labels": {"env": "prod"}, "spec": {"stale_duration": 10}},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["metadata"]["resource_version"] == 1
    assert body["metadata"]["namespace"] == "default"
    assert body["metadata"]["labels"] == {"env": "prod"}
    assert runtime.enqueued == [("default", "cluster-a")]

    duplicate = await client.post("/join-clusters", json={"name": "cluster-a"})
    assert duplicate.status_code == 409

    fetched = await client.get("/join-clusters/default/cluster-a")
    assert fetched.status_code == 200
    assert fetched.json()["metadata"]["uid"] == body["metadata"]["uid"]

    missing = await client.get("/join-clusters/default/nope")
    assert missing.status_code == 404

    await client.post("/join-clusters", json={"name": "cluster-b", "namespace": "edge"})
    listed = await client.get("/join-clusters", params={"namespace": "edge"})
    assert [item["metadata"]["name"] for item in listed.json()] == ["cluster-b"]


@pytest.mark.asyncio
async def test_create_rejects_invalid_names(client: httpx.AsyncClient) -> None:
    response = await client.post("/join-clusters", json={"name": "Not_Valid"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_delete_reports_terminating_or_deleted(
    client: httpx.AsyncClient,
    store: ObjectStore,
    runtime: RecordingRuntime,
) -> None:
    plain = await client.post("/join-clusters", json={"name": "plain"})
    assert plain.status_code == 201
    response = await client.delete("/join-clusters/default/plain")
    assert response.status_code == 202
    assert response.json()["state"] == "deleted"

    held = JoinCluster(metadata=ObjectMeta(name="held", finalizers=["fleethub.io/join-cleanup"]))
    await store.create(held)
    response = await client.delete("/join-clusters/default/held")
    assert response.status_code == 202
    assert response.json() == {"namespace": "default", "name": "held", "state": "terminating"}
    assert ("default", "held") in runtime.enqueued

    fetched = await client.get("/join-clusters/default/held")
    assert fetched.json()["metadata"]["deletion_timestamp"] is not None

    missing = await client.delete("/join-clusters/default/nope")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_status_update_requires_identity_token(
    client: httpx.AsyncClient,
    store: ObjectStore,
    settings: Settings,
) -> None:
    join = await _assigned_join(store)
    body = {"resource_version": join.metadata.resource_version, "status": _heartbeat_status(join)}

    response = await client.put("/join-clusters/default/cluster-a/status", json=body)
    assert response.status_code == 401

    response = await client.put(
        "/join-clusters/default/cluster-a/status",
        json=body,
        headers={"Authorization": "Bearer forged.token"},
    )
    assert response.status_code == 401

    response = await client.put(
        "/join-clusters/default/cluster-a/status",
        json=body,
        headers=_bearer(settings, "intruder"),
    )
    assert response.status_code == 403

    response = await client.put(
        "/join-clusters/default/cluster-a/status",
        json=body,
        headers=_bearer(settings, "cluster-a-identity", namespace="other"),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_status_update_applies_and_detects_conflicts(
    client: httpx.AsyncClient,
    store: ObjectStore,
    settings: Settings,
    runtime: RecordingRuntime,
) -> None:
    join = await _assigned_join(store)
    headers = _bearer(settings, "cluster-a-identity")
    body = {"resource_version": join.metadata.resource_version, "status": _heartbeat_status(join)}

    response = await client.put("/join-clusters/default/cluster-a/status", json=body, headers=headers)
    assert response.status_code == 200
    updated = response.json()
    assert updated["metadata"]["resource_version"] == join.metadata.resource_version + 1
    assert updated["status"]["agent_info"]["node_count"] == 3
    assert updated["status"]["identity_name"] == "cluster-a-identity"
    assert runtime.enqueued == [("default", "cluster-a")]

    stale = await client.put("/join-clusters/default/cluster-a/status", json=body, headers=headers)
    assert stale.status_code == 409

    missing = await client.put("/join-clusters/default/nope/status", json=body, headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_get_secret(client: httpx.AsyncClient, store: ObjectStore) -> None:
    secret = Secret(metadata=ObjectMeta(name="cluster-a-join-secret", namespace="fleethub-system"))
    secret.set_value("token", b"abc")
    await store.create(secret)

    response = await client.get("/secrets/fleethub-system/cluster-a-join-secret")
    assert response.status_code == 200
    assert response.json()["data"] == {"token": "YWJj"}

    missing = await client.get("/secrets/fleethub-system/nope")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_events_record_join_cluster_lifecycle(client: httpx.AsyncClient) -> None:
    await client.post("/join-clusters", json={"name": "cluster-a"})
    await client.delete("/join-clusters/default/cluster-a")

    response = await client.get("/events", params={"object_key": "default/cluster-a"})
    assert response.status_code == 200
    assert sorted(item["name"] for item in response.json()) == ["object.create", "object.delete"]

    filtered = await client.get("/events", params={"category": "Secret"})
    assert filtered.json() == []


@pytest.mark.asyncio
async def test_system_endpoints(
    client: httpx.AsyncClient,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert "X-Request-ID" in health.headers

    version = await client.get("/version")
    assert version.status_code == 200
    assert version.json()["version"]

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "fleethub_http_requests_total" in metrics.text

    monkeypatch.setattr(
        system_routes,
        "get_settings",
        lambda: settings.model_copy(update={"metrics_enabled": False}),
    )
    disabled = await client.get("/metrics")
    assert disabled.status_code == 404
