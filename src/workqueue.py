"""
Work Queue - Level-triggered, de-duplicating queue of resource keys.

Mirrors the client-go workqueue contract the reconcilers rely on:

- A key waiting in the queue is only queued once, however often it is added.
- A key is handed to at most one worker at a time. Adding it while it is
  being processed marks it dirty, and it is queued again on ``done``.
- Delayed adds keep only the earliest pending timer per key.
- Rate-limited adds back off exponentially per key until ``forget``.
"""

import asyncio
import logging
import random
from typing import Dict, Hashable, List, Optional, Set

logger = logging.getLogger(__name__)


class WorkQueue:
    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: List[Hashable] = []
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._failures: Dict[Hashable, int] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue a key for processing now."""
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue a key after ``delay`` seconds."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()

        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def backoff_delay(self, key: Hashable) -> float:
        """Delay for the key's next retry, with jitter applied."""
        failures = self._failures.get(key, 0)
        delay = min(self.base_delay * 2 ** min(failures, 10), self.max_delay)
        return delay * (1 + (random.random() * 2 - 1) * self.jitter_factor)

    def add_rate_limited(self, key: Hashable) -> float:
        """
        Queue a key after its backoff delay and count the failure.

        Returns:
            The delay used, in seconds.
        """
        delay = self.backoff_delay(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Reset the backoff for a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down.
        """
        while not self._queue and not self._shutting_down:
            self._wakeup.clear()
            await self._wakeup.wait()
        if self._shutting_down:
            return None
        key = self._queue.pop(0)
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark a key as processed, requeueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending timers."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._wakeup.set()
