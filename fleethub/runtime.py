from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from fleethub.config import Settings
from fleethub.controllers.hub import HubReconciler
from fleethub.controllers.workqueue import Key, ReconcileLoop
from fleethub.dependencies import get_sessionmaker
from fleethub.logger import get_logger
from fleethub.metrics import record_runtime_loop
from fleethub.schemas.objects import JoinCluster
from fleethub.services.provisioner import CredentialProvisioner
from fleethub.services.tokens import sync_identity_tokens
from fleethub.store import ObjectStore

_logger = get_logger("runtime")


class HubRuntime:
    """Background loops of the hub: JoinCluster reconciles and identity tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[ObjectStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings
        self._store = store or ObjectStore(get_sessionmaker(settings.database_url))
        provisioner = CredentialProvisioner(self._store, settings)
        self.reconciler = HubReconciler(self._store, provisioner, settings, clock)
        self._loop = ReconcileLoop(
            self.reconciler.reconcile,
            workers=settings.hub_reconcile_workers,
            resync_interval=settings.hub_sync_interval_seconds,
            list_keys=self._list_keys,
            base_backoff=settings.hub_backoff_base_seconds,
            max_backoff=settings.hub_backoff_max_seconds,
        )
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._started = False

    @property
    def enabled(self) -> bool:
        return self._settings.hub_runtime_enable

    @property
    def loop(self) -> ReconcileLoop:
        return self._loop

    async def start(self) -> None:
        if not self.enabled:
            _logger.info("runtime.disabled", "Hub runtime is disabled")
            return
        self._stop.clear()
        await self._loop.start()
        self._tasks.append(asyncio.create_task(self._token_loop()))
        self._started = True
        _logger.info(
            "runtime.tokens.start",
            "Started identity token loop",
            interval_seconds=self._settings.hub_token_sync_interval_seconds,
        )

    async def stop(self) -> None:
        self._stop.set()
        if not self._started:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._loop.stop()
        self._started = False
        _logger.info("runtime.stop", "Stopped hub runtime")

    def enqueue(self, namespace: str, name: str) -> None:
        if self._started:
            self._loop.enqueue((namespace, name))

    async def _list_keys(self) -> List[Key]:
        joins = await self._store.list(JoinCluster, limit=100000)
        return [(join.namespace, join.name) for join in joins]

    async def _token_loop(self) -> None:
        interval = self._settings.hub_token_sync_interval_seconds
        while not self._stop.is_set():
            try:
                touched = await sync_identity_tokens(self._store, self._settings)
                record_runtime_loop(loop="identity_tokens", ok=True)
                if touched:
                    for key in await self._list_keys():
                        self._loop.enqueue(key)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_runtime_loop(loop="identity_tokens", ok=False)
                _logger.exception(
                    "runtime.tokens.error",
                    "Identity token loop failed",
                    error_type=type(exc).__name__,
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except TimeoutError:
                continue
