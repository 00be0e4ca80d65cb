"""Per-caller fixed-window request limiting for the mutating API routes."""

from __future__ import annotations

import time
from typing import Callable

import structlog

from velocity.strategy.errors import RateLimitError


class RateLimitTracker:
    """Count requests per key in fixed windows of ``window_sec``.

    The window for a key opens on its first request; once ``max_requests`` have
    been made, further requests are rejected until the window expires.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        # key -> (count, window_start)
        self._windows: dict[str, tuple[int, float]] = {}
        self.log = structlog.get_logger(__name__)

    def consume(self, key: str) -> None:
        now = self._clock()
        count, window_start = self._windows.get(key, (0, now))
        if now - window_start >= self.window_sec:
            count, window_start = 0, now
        if count >= self.max_requests:
            self.log.warning("api_rate_limited", key=key, window_sec=self.window_sec)
            raise RateLimitError("Rate limit exceeded")
        self._windows[key] = (count + 1, window_start)
        if len(self._windows) > 10_000:
            self._prune(now)

    def _prune(self, now: float) -> None:
        self._windows = {
            key: entry for key, entry in self._windows.items() if now - entry[1] < self.window_sec
        }
