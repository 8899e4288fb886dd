from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional
from urllib import error, request
from urllib.parse import quote

from fleethub.errors import ConflictError, HubRequestError, NotFoundError
from fleethub.identity import ssl_context_from_bundle
from fleethub.schemas.objects import JoinCluster


def _error_detail(exc: error.HTTPError) -> str:
    try:
        raw = exc.read().decode("utf-8")
    except OSError:
        return exc.reason or ""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(parsed, dict) and "detail" in parsed:
        return str(parsed["detail"])
    return raw


class HubClient:
    """Blocking JSON client for the hub API with async wrappers for the agent."""

    def __init__(
        self,
        server: str,
        *,
        token: str = "",
        ca_bundle: Optional[bytes] = None,
        timeout_seconds: int = 10,
    ) -> None:
        self.server = server.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._context = ssl_context_from_bundle(ca_bundle) if ca_bundle and self.server.startswith("https") else None

    def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {"Accept": "application/json"}
        body: Optional[bytes] = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        req = request.Request(url=f"{self.server}{path}", method=method, data=body, headers=headers)
        try:
            with request.urlopen(req, timeout=self._timeout_seconds, context=self._context) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raise HubRequestError(exc.code, _error_detail(exc)) from exc
        except error.URLError as exc:
            raise HubRequestError(0, str(exc.reason)) from exc
        if not raw:
            return {}
        return json.loads(raw)

    @staticmethod
    def join_cluster_path(namespace: str, name: str) -> str:
        return f"/join-clusters/{quote(namespace, safe='')}/{quote(name, safe='')}"

    async def get_join_cluster(self, namespace: str, name: str) -> JoinCluster:
        try:
            payload = await asyncio.to_thread(self.request, "GET", self.join_cluster_path(namespace, name))
        except HubRequestError as exc:
            if exc.status_code == 404:
                raise NotFoundError(JoinCluster.kind, namespace, name, exc.detail) from exc
            raise
        return JoinCluster.model_validate(payload)

    async def update_join_cluster_status(self, join: JoinCluster) -> JoinCluster:
        path = f"{self.join_cluster_path(join.namespace, join.name)}/status"
        body = {
            "resource_version": join.metadata.resource_version,
            "status": join.status.model_dump(mode="json"),
        }
        try:
            payload = await asyncio.to_thread(self.request, "PUT", path, body)
        except HubRequestError as exc:
            if exc.status_code == 404:
                raise NotFoundError(JoinCluster.kind, join.namespace, join.name, exc.detail) from exc
            if exc.status_code == 409:
                raise ConflictError(JoinCluster.kind, join.namespace, join.name, exc.detail) from exc
            raise
        return JoinCluster.model_validate(payload)
