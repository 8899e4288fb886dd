from __future__ import annotations

from typing import Optional


class FleetHubError(Exception):
    """Base class for every error raised by fleethub."""


class StoreError(FleetHubError):
    def __init__(self, kind: str, namespace: str, name: str, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.detail = detail or self.default_detail
        super().__init__(f"{kind} {namespace}/{name}: {self.detail}")

    default_detail = "store error"


class NotFoundError(StoreError):
    default_detail = "not found"


class AlreadyExistsError(StoreError):
    default_detail = "already exists"


class ConflictError(StoreError):
    default_detail = "resource version conflict"


class NotReadyError(FleetHubError):
    """A dependency exists but is not populated yet; the next reconcile retries."""


class BootstrapConfigError(FleetHubError):
    """Agent bootstrap coordinates are missing or empty."""


class ManifestError(FleetHubError):
    """The static agent manifest could not be read."""


class HubRequestError(FleetHubError):
    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")
