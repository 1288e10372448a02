import asyncio
import logging
from typing import Dict, Generic, Hashable, Optional, Set, TypeVar

from redisop.config import settings

logger = logging.getLogger(__name__)

KeyT = TypeVar("KeyT", bound=Hashable)


class ShutDown(Exception):
    """Raised by get() once the queue is shut down"""


class WorkQueue(Generic[KeyT]):
    """Coalescing work queue with per-key exponential backoff

    A key is handed to at most one worker at a time. Adding a key that is
    already queued is a no-op; adding a key while it is being processed marks
    it dirty so exactly one more pass runs after ``done``.
    """

    def __init__(self, backoff_base: Optional[float] = None, backoff_cap: Optional[float] = None):
        self.backoff_base = backoff_base if backoff_base is not None else settings.backoff_base
        self.backoff_cap = backoff_cap if backoff_cap is not None else settings.backoff_cap
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[KeyT] = set()
        self._processing: Set[KeyT] = set()
        self._timers: Dict[KeyT, asyncio.TimerHandle] = {}
        self._failures: Dict[KeyT, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    def add(self, key: KeyT) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: KeyT, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed, keeping the earliest pending deadline"""
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None and not existing.cancelled():
            if existing.when() <= deadline:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(deadline, self._fire, key)

    def _fire(self, key: KeyT) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> KeyT:
        key = await self._queue.get()
        if key is None:
            # Wake the next waiter too
            self._queue.put_nowait(None)
            raise ShutDown()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: KeyT) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def backoff(self, key: KeyT, cap: Optional[float] = None) -> float:
        """Record a failure and return the delay before the next attempt"""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        limit = cap if cap is not None else self.backoff_cap
        return min(self.backoff_base * 2 ** min(failures - 1, 32), limit, self.backoff_cap)

    def failures(self, key: KeyT) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: KeyT) -> None:
        self._failures.pop(key, None)

    def cancel(self, key: KeyT) -> None:
        """Drop a pending delayed add and failure history"""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self.forget(key)

    def is_processing(self, key: KeyT) -> bool:
        return key in self._processing

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
