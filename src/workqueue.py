#!/usr/bin/env python3
# src/workqueue.py
"""
Rate-limited delaying work queue keyed by cluster (``namespace/name``).

A key is handed to at most one worker at a time. Adding a key that is
being processed marks it dirty; it is queued again once ``done()`` is
called for it.
"""

import heapq
import itertools
import logging
import os
import random
import threading
import time
from collections import deque
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger("emqx-cluster-manager.queue")

RECONCILE_MAX_BACKOFF = float(os.environ.get("RECONCILE_MAX_BACKOFF", "300"))
RECONCILE_BASE_BACKOFF = 0.5


def calculate_exponential_backoff(
    attempt: int, base_delay: float = RECONCILE_BASE_BACKOFF, max_delay: float = RECONCILE_MAX_BACKOFF
) -> float:
    """Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Retry attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Backoff delay with jitter, never above max_delay
    """
    delay = min(base_delay * (2 ** min(attempt, 32)), max_delay)
    # Add jitter to prevent thundering herd
    jitter = random.uniform(0.1, 0.3) * delay
    return min(delay + jitter, max_delay)


class RateLimitingQueue:
    def __init__(
        self,
        base_delay: float = RECONCILE_BASE_BACKOFF,
        max_delay: float = RECONCILE_MAX_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _add_locked(self, key: str):
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready_locked(self):
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)

    def add(self, key: str):
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def when(self, key: str) -> float:
        """Next backoff delay for a failing key; every call counts as one failure."""
        with self._cond:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
        return calculate_exponential_backoff(attempt, self.base_delay, self.max_delay)

    def add_rate_limited(self, key: str) -> float:
        delay = self.when(key)
        logger.debug(f"Requeueing {key} after {delay:.2f}s backoff")
        self.add_after(key, delay)
        return delay

    def forget(self, key: str):
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next ready key, or None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                now = self._clock()
                wait_for = None
                if self._waiting:
                    wait_for = max(self._waiting[0][0] - now, 0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
