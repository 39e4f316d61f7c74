from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    A thread-safe fixed-window counter keyed by recipient.

    - Each key gets its own window of `window_seconds`, opened by the first check.
    - At most `max_requests` checks are admitted per window; later checks are refused
      and report the unchanged `reset_at` so callers can compute the wait.
    - The window resets on the first check after `reset_at` has passed.
    - Expired windows are swept every `window_seconds` to bound memory.

    A request near a window edge can see up to 2x `max_requests` admissions across
    the boundary. Not a distributed limiter.
    """

    def __init__(
        self,
        max_requests: int = 3,
        window_seconds: float = 3600.0,
        *,
        clock=time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._max = max_requests
        self._window = window_seconds
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._next_sweep_at = clock() + window_seconds

    @property
    def max_requests(self) -> int:
        return self._max

    def check(self, key: str) -> RateDecision:
        """Count one request for `key` and return whether it is admitted."""
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep_at:
                self._sweep(now)
            win = self._windows.get(key)
            if win is None or now > win.reset_at:
                win = _Window(count=1, reset_at=now + self._window)
                self._windows[key] = win
                return RateDecision(allowed=True, remaining=self._max - 1, reset_at=win.reset_at)
            if win.count >= self._max:
                return RateDecision(allowed=False, remaining=0, reset_at=win.reset_at)
            win.count += 1
            return RateDecision(allowed=True, remaining=self._max - win.count, reset_at=win.reset_at)

    def peek(self, key: str) -> Optional[RateDecision]:
        """Return the current window for `key` without counting a request."""
        with self._lock:
            win = self._windows.get(key)
            if win is None or self._clock() > win.reset_at:
                return None
            return RateDecision(
                allowed=win.count < self._max,
                remaining=max(self._max - win.count, 0),
                reset_at=win.reset_at,
            )

    def sweep(self) -> int:
        """Drop expired windows now; returns how many were removed."""
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if now > w.reset_at]
        for k in expired:
            del self._windows[k]
        self._next_sweep_at = now + self._window
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


__all__ = [
    "FixedWindowRateLimiter",
    "RateDecision",
]
