from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncIterator

os.environ.setdefault("FLEETHUB_DATABASE_URL", "sqlite+aiosqlite:///./data/fleethub-test.db")
os.environ.setdefault("FLEETHUB_LOG_FILE", "")
os.environ.setdefault("FLEETHUB_HUB_RUNTIME_ENABLE", "false")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fleethub.config import Settings
from fleethub.models import Base
from fleethub.services.provisioner import CredentialProvisioner
from fleethub.store import ObjectStore
from tests.helpers import REPO_ROOT, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fleethub.db'}",
        log_file="",
        hub_api_server_url="https://hub.example:6443",
        hub_pki_dir=str(tmp_path / "pki"),
        agent_manifest_path=str(REPO_ROOT / "ops" / "agent" / "agent.yaml"),
        hub_runtime_enable=False,
    )


@pytest_asyncio.fixture
async def sessionmaker(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def store(sessionmaker: async_sessionmaker[AsyncSession], clock: FakeClock) -> ObjectStore:
    return ObjectStore(sessionmaker, clock=clock)


@pytest.fixture
def provisioner(store: ObjectStore, settings: Settings) -> CredentialProvisioner:
    return CredentialProvisioner(store, settings)
