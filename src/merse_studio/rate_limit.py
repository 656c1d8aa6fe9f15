from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after_s: int


class RateLimiter:
    """Fixed-window counter per identifier, kept in process memory."""

    def __init__(self, limit: int, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = max(1, int(limit))
        self.window_s = float(window_s)
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, identifier: str | None) -> RateDecision:
        key = (identifier or "").strip() or "anonymous"
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_s:
                started, count = now, 0
            if count >= self.limit:
                retry = math.ceil(self.window_s - (now - started))
                return RateDecision(allowed=False, remaining=0, retry_after_s=max(1, retry))
            count += 1
            self._windows[key] = (started, count)
            return RateDecision(allowed=True, remaining=self.limit - count, retry_after_s=0)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
