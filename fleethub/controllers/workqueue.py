from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from fleethub.controllers.hub import ReconcileResult
from fleethub.errors import ConflictError
from fleethub.logger import get_logger
from fleethub.metrics import record_reconcile, record_runtime_loop

_logger = get_logger("controllers.workqueue")

Key = Tuple[str, str]
ReconcileFn = Callable[[str, str], Awaitable[ReconcileResult]]
ListKeysFn = Callable[[], Awaitable[List[Key]]]


class ReconcileLoop:
    """Level-triggered work loop keyed by (namespace, name).

    A key sits in the queue at most once. A key that is enqueued while a
    worker holds it is marked dirty and queued again once that worker is done,
    so one key is never reconciled by two workers at the same time.
    """

    def __init__(
        self,
        reconcile: ReconcileFn,
        *,
        workers: int = 4,
        resync_interval: float = 30.0,
        list_keys: Optional[ListKeysFn] = None,
        base_backoff: float = 0.5,
        max_backoff: float = 60.0,
        name: str = "join_clusters",
    ) -> None:
        self._reconcile = reconcile
        self._workers = workers
        self._resync_interval = resync_interval
        self._list_keys = list_keys
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._name = name
        self._queue: asyncio.Queue[Key] = asyncio.Queue()
        self._queued: Set[Key] = set()
        self._processing: Set[Key] = set()
        self._dirty: Set[Key] = set()
        self._failures: Dict[Key, int] = {}
        self._timers: Dict[Key, asyncio.TimerHandle] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._stop = asyncio.Event()

    @property
    def pending(self) -> int:
        return len(self._queued)

    def failures(self, key: Key) -> int:
        return self._failures.get(key, 0)

    def backoff_for(self, failures: int) -> float:
        return min(self._base_backoff * (2 ** max(failures - 1, 0)), self._max_backoff)

    def enqueue(self, key: Key, delay: float = 0.0) -> None:
        if delay > 0:
            self._schedule(key, delay)
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def _schedule(self, key: Key, delay: float) -> None:
        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: Key) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    async def start(self) -> None:
        self._stop.clear()
        for index in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker(index)))
        if self._list_keys is not None:
            self._tasks.append(asyncio.create_task(self._resync_loop()))
        _logger.info(
            "workqueue.start",
            "Started reconcile loop",
            loop=self._name,
            workers=self._workers,
            resync_interval_seconds=self._resync_interval,
        )

    async def stop(self) -> None:
        self._stop.set()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        _logger.info("workqueue.stop", "Stopped reconcile loop", loop=self._name)

    async def wait_idle(self) -> None:
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self._process(key, worker=index)
            finally:
                self._processing.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.enqueue(key)
                self._queue.task_done()

    async def _process(self, key: Key, *, worker: int) -> None:
        namespace, name = key
        with _logger.context(reconcile_id=uuid4().hex[:12], join_cluster=f"{namespace}/{name}"):
            try:
                result = await self._reconcile(namespace, name)
            except asyncio.CancelledError:
                raise
            except ConflictError as exc:
                record_reconcile(result="conflict")
                _logger.info(
                    "reconcile.conflict",
                    "Write conflict; requeueing with a fresh read",
                    worker=worker,
                    detail=exc.detail,
                )
                self._dirty.add(key)
                return
            except Exception as exc:  # noqa: BLE001
                failures = self._failures.get(key, 0) + 1
                self._failures[key] = failures
                delay = self.backoff_for(failures)
                record_reconcile(result="error")
                _logger.warning(
                    "reconcile.error",
                    "Reconcile failed; retrying with backoff",
                    worker=worker,
                    failures=failures,
                    retry_in_seconds=delay,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self.enqueue(key, delay)
                return

            record_reconcile(result="ok")
            self._failures.pop(key, None)
            if result.requeue_after is not None:
                self.enqueue(key, result.requeue_after)

    async def _resync_loop(self) -> None:
        assert self._list_keys is not None
        while not self._stop.is_set():
            try:
                keys = await self._list_keys()
                for key in keys:
                    self.enqueue(key)
                record_runtime_loop(loop=f"{self._name}_resync", ok=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_runtime_loop(loop=f"{self._name}_resync", ok=False)
                _logger.exception(
                    "workqueue.resync.error",
                    "Resync listing failed",
                    loop=self._name,
                    error_type=type(exc).__name__,
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._resync_interval)
            except TimeoutError:
                continue
