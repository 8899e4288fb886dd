from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from fleethub.schemas.objects import JoinCluster, ObjectMeta

REPO_ROOT = Path(__file__).resolve().parent.parent
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


def make_join(name: str = "cluster-a", namespace: str = "default", **spec: object) -> JoinCluster:
    return JoinCluster.model_validate(
        {"metadata": ObjectMeta(name=name, namespace=namespace), "spec": spec}
    )
