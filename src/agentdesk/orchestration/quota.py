"""Per-user daily usage ledger.

Counters live in one window per user per UTC day. Checks read the window;
commits go through the store's atomic increment, never read-modify-write.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from src.agentdesk.config.settings import QuotaLimits
from .errors import LimitType, RateLimitExceeded
from .stores import QuotaDeltas, QuotaStore, QuotaWindowState

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_key(now: datetime) -> str:
    return as_utc(now).strftime("%Y-%m-%d")


def next_utc_midnight(now: datetime) -> datetime:
    now = as_utc(now)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)


def effective_requests(window: QuotaWindowState, now: datetime) -> int:
    """Hourly counter with the lazy reset applied."""
    last = as_utc(window.last_request_at)
    if last is None or now - last >= HOUR:
        return 0
    return window.requests_in_current_hour


class QuotaDecision(BaseModel):
    allowed: bool
    unlimited: bool = False
    reason: Optional[str] = None
    limit_type: Optional[LimitType] = None
    limit_name: Optional[str] = None
    reset_time: Optional[datetime] = None

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise RateLimitExceeded(
                self.limit_type or "trial",
                self.limit_name or "unknown",
                self.reason or "Usage limit reached",
                self.reset_time,
            )


class UsageMeter(BaseModel):
    used: float
    limit: float
    percentage: float
    remaining: float


class UsageSummary(BaseModel):
    unlimited: bool = False
    tokens: Optional[UsageMeter] = None
    requests: Optional[UsageMeter] = None
    cost: Optional[UsageMeter] = None
    resetsAt: datetime


def _meter(used: float, limit: float) -> UsageMeter:
    percentage = min(used / limit * 100, 100.0) if limit > 0 else 100.0
    return UsageMeter(used=used, limit=limit, percentage=round(percentage, 2), remaining=max(limit - used, 0))


class QuotaLedger:
    def __init__(self, store: QuotaStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def check_and_reserve(
        self,
        user_id: str,
        limits: QuotaLimits,
        override_key: Optional[str] = None,
    ) -> QuotaDecision:
        """Decides whether a paid call may start. Nothing is written here."""
        if override_key:
            return QuotaDecision(allowed=True, unlimited=True)

        now = as_utc(self.clock())
        key = window_key(now)
        window = await self.store.get_or_create_window(user_id, key)

        # check order: daily tokens, hourly requests, daily cost
        if window.tokens_used >= limits.maxTokensPerWindow:
            return QuotaDecision(
                allowed=False,
                reason=f"Daily token limit reached ({window.tokens_used}/{limits.maxTokensPerWindow})",
                limit_type="trial",
                limit_name="tokens",
                reset_time=next_utc_midnight(now),
            )
        requests = effective_requests(window, now)
        if requests >= limits.maxRequestsPerHour:
            last = as_utc(window.last_request_at) or now
            return QuotaDecision(
                allowed=False,
                reason=f"Hourly request limit reached ({requests}/{limits.maxRequestsPerHour})",
                limit_type="trial",
                limit_name="requests",
                reset_time=last + HOUR,
            )
        if window.cost_accumulated >= limits.maxCostPerWindow:
            return QuotaDecision(
                allowed=False,
                reason=f"Daily cost limit reached (${window.cost_accumulated:.4f}/${limits.maxCostPerWindow:.2f})",
                limit_type="trial",
                limit_name="cost",
                reset_time=next_utc_midnight(now),
            )
        return QuotaDecision(allowed=True)

    async def commit(self, user_id: str, tokens_used: int, cost: float) -> bool:
        """Adds one completed call to today's window.

        Failures are logged and swallowed; the answer has already been sent.
        """
        now = as_utc(self.clock())
        deltas = QuotaDeltas(tokens=max(int(tokens_used), 0), cost=max(float(cost), 0.0), requests=1)
        try:
            await self.store.atomic_increment(user_id, window_key(now), deltas, now)
        except Exception:
            logger.exception("Usage commit failed for user %s (tokens=%s cost=%.6f)", user_id, deltas.tokens, deltas.cost)
            return False
        return True

    async def summarize(self, user_id: str, limits: QuotaLimits, unlimited: bool = False) -> UsageSummary:
        now = as_utc(self.clock())
        resets_at = next_utc_midnight(now)
        if unlimited:
            return UsageSummary(unlimited=True, resetsAt=resets_at)
        window = await self.store.get_or_create_window(user_id, window_key(now))
        return UsageSummary(
            tokens=_meter(window.tokens_used, limits.maxTokensPerWindow),
            requests=_meter(effective_requests(window, now), limits.maxRequestsPerHour),
            cost=_meter(round(window.cost_accumulated, 6), limits.maxCostPerWindow),
            resetsAt=resets_at,
        )
