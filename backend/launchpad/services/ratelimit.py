from __future__ import annotations

import asyncio
from time import monotonic


class FixedWindowRateLimiter:
    """Per-key request counter over fixed windows, kept in process memory."""

    def __init__(self, max_requests: int, window_seconds: float) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        if self.max_requests <= 0:
            return True
        now = monotonic()
        async with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_requests:
                return False
            self._windows[key] = (started, count + 1)
            if len(self._windows) > 10_000:
                self._evict(now)
            return True

    def _evict(self, now: float) -> None:
        expired = [k for k, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            self._windows.pop(key, None)

    def reset(self) -> None:
        self._windows.clear()
