"""In-memory sliding window attempt counter."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, DefaultDict, Protocol


class AttemptLimiter(Protocol):
    def exceeded(self, key: str) -> bool: ...

    def record(self, key: str) -> None: ...

    def reset(self, key: str) -> None: ...


class SlidingWindowAttemptLimiter:
    """Thread-safe per-key attempt counter over a sliding window.

    Callers check :meth:`exceeded` before acting and :meth:`record` the
    attempts that should count (e.g. only failed logins).
    """

    def __init__(
        self,
        max_attempts: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_attempts = max_attempts
        self._window = window_seconds
        self._clock = clock
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        queue = self._events[key]
        while queue and now - queue[0] >= self._window:
            queue.popleft()
        return queue

    def exceeded(self, key: str) -> bool:
        """Return ``True`` once ``key`` has used up its attempts in the window."""
        with self._lock:
            return len(self._prune(key, self._clock())) >= self._max_attempts

    def record(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._prune(key, now).append(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)
