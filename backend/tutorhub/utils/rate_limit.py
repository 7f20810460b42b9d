"""In-memory login throttle keyed by client address and account."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable


class LoginRateLimiter:
    """Sliding-window counter of login attempts per key.

    A successful login clears the key so a user who finally types the
    right password is not locked out by earlier typos. Keys whose attempts
    have all expired are swept at most once per window.
    """

    def __init__(self, max_attempts: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def hit(self, key: str) -> tuple[bool, int]:
        """Record an attempt; return `(allowed, retry_after_seconds)`."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            attempts = self._attempts[key]
            self._prune(attempts, now)
            if len(attempts) >= self.max_attempts:
                return False, max(1, int(self.window_seconds - (now - attempts[0])))
            attempts.append(now)
        return True, 0

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def __len__(self) -> int:
        return len(self._attempts)

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._attempts):
            attempts = self._attempts[key]
            self._prune(attempts, now)
            if not attempts:
                del self._attempts[key]

    def _prune(self, attempts: deque, now: float) -> None:
        cutoff = now - self.window_seconds
        while attempts and attempts[0] < cutoff:
            attempts.popleft()
