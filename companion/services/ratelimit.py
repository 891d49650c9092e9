"""In-process fixed-window rate limiter.

State lives in the instance owned by the app, so limits are per process.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict

from .errors import RateLimitedError


@dataclass
class _Window:
    count: int
    expires_at: float


class RateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        message: str = "Too many requests. Please retry later.",
        code: str = "RATE_LIMITED",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1.0, float(window_seconds))
        self.message = message
        self.code = code
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def hit(self, key: str) -> None:
        """Count one request for `key`; raise RateLimitedError when over the limit."""
        key = key or "anonymous"
        now = self._clock()
        window = self._windows.get(key)
        if window is None or window.expires_at <= now:
            self._windows[key] = _Window(1, now + self.window_seconds)
            return
        if window.count >= self.max_requests:
            retry_after = max(0.0, window.expires_at - now)
            raise RateLimitedError(
                self.message,
                code=self.code,
                details={"retryAfterMs": int(retry_after * 1000)},
            )
        window.count += 1
