from __future__ import annotations

import io
import json
from typing import Any, List
from urllib import error

import pytest

from fleethub import hub_client
from fleethub.errors import ConflictError, HubRequestError, NotFoundError
from fleethub.hub_client import HubClient
from tests.helpers import make_join


class FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def _http_error(code: int, detail: str) -> error.HTTPError:
    body = io.BytesIO(json.dumps({"detail": detail}).encode("utf-8"))
    return error.HTTPError("http://hub/x", code, "error", {}, body)


@pytest.fixture
def sent(monkeypatch: pytest.MonkeyPatch) -> List[Any]:
    requests: List[Any] = []

    def fake_urlopen(req, timeout=None, context=None):
        requests.append(req)
        payload = make_join().model_dump(mode="json")
        return FakeResponse(json.dumps(payload).encode("utf-8"))

    monkeypatch.setattr(hub_client.request, "urlopen", fake_urlopen)
    return requests


def _failing(monkeypatch: pytest.MonkeyPatch, exc: Exception) -> None:
    def fake_urlopen(req, timeout=None, context=None):
        raise exc

    monkeypatch.setattr(hub_client.request, "urlopen", fake_urlopen)


@pytest.mark.asyncio
async def test_get_sends_bearer_token(sent: List[Any]) -> None:
    client = HubClient("http://hub:8000/", token="abc.def")
    join = await client.get_join_cluster("default", "cluster-a")

    assert join.name == "cluster-a"
    req = sent[0]
    assert req.full_url == "http://hub:8000/join-clusters/default/cluster-a"
    assert req.get_method() == "GET"
    assert req.get_header("Authorization") == "Bearer abc.def"


@pytest.mark.asyncio
async def test_status_update_puts_version_and_status(sent: List[Any]) -> None:
    client = HubClient("http://hub:8000")
    join = make_join()
    join.metadata.resource_version = 7
    await client.update_join_cluster_status(join)

    req = sent[0]
    assert req.get_method() == "PUT"
    assert req.full_url.endswith("/join-clusters/default/cluster-a/status")
    body = json.loads(req.data)
    assert body["resource_version"] == 7
    assert body["status"]["conditions"] == []


@pytest.mark.asyncio
async def test_not_found_and_conflict_are_mapped(monkeypatch: pytest.MonkeyPatch) -> None:
    client = HubClient("http://hub:8000")

    _failing(monkeypatch, _http_error(404, "JoinCluster not found"))
    with pytest.raises(NotFoundError):
        await client.get_join_cluster("default", "cluster-a")

    _failing(monkeypatch, _http_error(409, "resource version conflict"))
    with pytest.raises(ConflictError) as excinfo:
        await client.update_join_cluster_status(make_join())
    assert excinfo.value.detail == "resource version conflict"

    _failing(monkeypatch, _http_error(403, "forbidden"))
    with pytest.raises(HubRequestError) as forbidden:
        await client.update_join_cluster_status(make_join())
    assert forbidden.value.status_code == 403


def test_unreachable_hub_reports_status_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    _failing(monkeypatch, error.URLError("connection refused"))
    with pytest.raises(HubRequestError) as excinfo:
        HubClient("http://hub:8000").request("GET", "/health")
    assert excinfo.value.status_code == 0
    assert "connection refused" in excinfo.value.detail
