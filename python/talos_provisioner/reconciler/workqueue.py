"""
talos_provisioner/reconciler/workqueue.py

A deduplicating work queue for record names:

 - a name is queued at most once, however often it is added
 - a name handed out by `get` is not handed out again until `done`; adds
   during that time mark it dirty and it is re-queued on `done`
 - `add_after` schedules an add on the event loop; only the earliest pending
   schedule per name is kept
 - `add_rate_limited` schedules an add after the delay chosen by the rate
   limiter, and `forget` resets the limiter's history for the name
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set

from talos_provisioner.utils.ratelimit import RateLimiter


class WorkQueue:
    def __init__(self, rate_limiter: Optional[RateLimiter] = None) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._rate_limiter = rate_limiter
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty - self._processing)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending.when() <= when:
                return
            pending.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str) -> float:
        """Schedule a retry of `key` and return the chosen delay."""
        if self._rate_limiter is None:
            raise RuntimeError("WorkQueue has no rate limiter.")
        delay = self._rate_limiter.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        if self._rate_limiter is not None:
            self._rate_limiter.forget(key)

    async def get(self) -> Optional[str]:
        """Next key to process, or None once the queue is shut down."""
        key = await self._queue.get()
        if key is None:
            # Wake the next waiter too.
            self._queue.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shut_down(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
