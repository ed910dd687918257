"""Per-user burst limiter: fixed one-minute windows held in process memory."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Tuple

from .errors import RateLimitExceeded


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BurstLimiter:
    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
        max_tracked: int = 10_000,
    ) -> None:
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self.max_tracked = max_tracked
        self._hits: Dict[str, Tuple[datetime, int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, user_id: str) -> int:
        """Counts one request; raises RateLimitExceeded once the window is full."""
        async with self._lock:
            now = self.clock()
            started, count = self._hits.get(user_id, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            if count >= self.max_requests:
                raise RateLimitExceeded(
                    "rate",
                    "burst",
                    f"Too many requests: {self.max_requests} per {int(self.window.total_seconds())}s",
                    started + self.window,
                )
            self._hits[user_id] = (started, count + 1)
            if len(self._hits) > self.max_tracked:
                self._evict_expired(now)
            return count + 1

    def _evict_expired(self, now: datetime) -> None:
        stale = [uid for uid, (started, _) in self._hits.items() if now - started >= self.window]
        for uid in stale:
            del self._hits[uid]

    async def reset(self) -> None:
        async with self._lock:
            self._hits.clear()
