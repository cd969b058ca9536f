"""
talos_provisioner/reconciler/controller.py

Level-triggered control loop for one resource kind. Record names are fed
into a WorkQueue by the initial listing, by desired-state change events and
by requeue timers; a fixed number of workers drain it.

Requeue policy after a pass:
 - success: again after the poll interval
 - transient error: after the per-record backoff, capped by the global bucket
 - fatal error: no backoff; again after the poll interval, or at once when
   the desired state changes
 - record gone: not requeued
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from talos_provisioner.reconciler.managed import ManagedReconciler, Outcome
from talos_provisioner.reconciler.store import ChangeEvent, ResourceStore
from talos_provisioner.reconciler.workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    def __init__(
        self,
        reconciler: ManagedReconciler,
        store: ResourceStore,
        queue: WorkQueue,
        *,
        workers: int = 2,
        poll_interval: float = 60.0,
    ) -> None:
        if workers < 1:
            raise ValueError("A controller needs at least one worker.")
        self.kind = reconciler.kind
        self._reconciler = reconciler
        self._store = store
        self._queue = queue
        self._workers = workers
        self._poll_interval = poll_interval

    async def run(self) -> None:
        """Run until cancelled. Workers and the watcher stop with it."""
        events = self._store.subscribe()
        tasks: List[asyncio.Task[None]] = []
        try:
            for resource in self._store.list(self.kind):
                self._queue.add(resource.name)
            tasks.append(asyncio.create_task(self._watch(events)))
            tasks.extend(
                asyncio.create_task(self._work(idx)) for idx in range(self._workers)
            )
            logger.info("Started %s controller with %d workers", self.kind, self._workers)
            await asyncio.gather(*tasks)
        finally:
            self._queue.shut_down()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._store.unsubscribe(events)
            logger.info("Stopped %s controller", self.kind)

    async def _watch(self, events: "asyncio.Queue[ChangeEvent]") -> None:
        while True:
            event = await events.get()
            if event.kind == self.kind:
                self._queue.add(event.name)

    async def _work(self, idx: int) -> None:
        while True:
            name = await self._queue.get()
            if name is None:
                return
            try:
                result = await self._reconciler.reconcile(name)
                self._requeue(name, result.outcome)
            finally:
                self._queue.done(name)

    def _requeue(self, name: str, outcome: Outcome) -> None:
        if outcome == Outcome.GONE:
            self._queue.forget(name)
        elif outcome == Outcome.TRANSIENT_ERROR:
            delay = self._queue.add_rate_limited(name)
            logger.debug("Retrying %s/%s in %.2fs", self.kind, name, delay)
        else:
            self._queue.forget(name)
            self._queue.add_after(name, self._poll_interval)
