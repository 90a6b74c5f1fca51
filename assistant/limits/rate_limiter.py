"""Admission control for assistant requests.

Checks run cheapest first and stop at the first denial:
hourly requests (actor) -> daily tokens (actor) -> monthly tokens (org).
All counters are aggregated from the usage store at check time, so the
limits hold across replicas.  The checks are reactive: nothing is
reserved for the request about to run.
"""

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from assistant.domain.types import Organization, Tier, utcnow
from assistant.storage.base import UsageStore

logger = logging.getLogger("aia.limits")

HOURLY_REQUEST_LIMIT = "hourly_request_limit"
DAILY_TOKEN_LIMIT = "daily_token_limit"
MONTHLY_TOKEN_LIMIT = "monthly_token_limit"
ORG_BUDGET_EXCEEDED = "org_budget_exceeded"
CONCURRENT_LIMIT = "concurrent_limit"

READ_REQUESTS_PER_HOUR = 120


@dataclass(frozen=True)
class TierLimits:
    daily_tokens: int
    monthly_tokens: int
    requests_per_hour: int

    def as_dict(self) -> dict[str, int]:
        return {
            "daily": self.daily_tokens,
            "monthly": self.monthly_tokens,
            "requests_per_hour": self.requests_per_hour,
        }


TIER_LIMITS: dict[Tier, TierLimits] = {
    Tier.FREE: TierLimits(daily_tokens=10_000, monthly_tokens=100_000, requests_per_hour=30),
    Tier.PLUS: TierLimits(daily_tokens=50_000, monthly_tokens=500_000, requests_per_hour=100),
}


@dataclass(frozen=True)
class LimitOverrides:
    """Deployment-level caps that replace tier defaults when set."""

    daily_tokens: int | None = None
    monthly_tokens: int | None = None
    requests_per_hour: int | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "LimitOverrides":
        return cls(
            daily_tokens=settings.daily_token_limit,
            monthly_tokens=settings.monthly_token_limit,
            requests_per_hour=settings.hourly_request_limit,
        )


def limits_for_tier(tier: Tier | str | None, overrides: LimitOverrides | None = None) -> TierLimits:
    base = TIER_LIMITS[Tier.parse(tier)]
    if overrides is None:
        return base
    return TierLimits(
        daily_tokens=(
            overrides.daily_tokens if overrides.daily_tokens is not None else base.daily_tokens
        ),
        monthly_tokens=(
            overrides.monthly_tokens
            if overrides.monthly_tokens is not None
            else base.monthly_tokens
        ),
        requests_per_hour=(
            overrides.requests_per_hour
            if overrides.requests_per_hour is not None
            else base.requests_per_hour
        ),
    )


# -- UTC period boundaries ---------------------------------------------------


def start_of_hour(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def next_hour(now: datetime) -> datetime:
    return start_of_hour(now) + timedelta(hours=1)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def next_day(now: datetime) -> datetime:
    return start_of_day(now) + timedelta(days=1)


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


def next_month(now: datetime) -> datetime:
    first = start_of_month(now)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def period_key(now: datetime) -> str:
    return f"{now.year:04d}-{now.month:02d}"


# -- Results -----------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    reason: str | None = None
    reset_at: datetime | None = None
    retry_after_seconds: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "current": self.current,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "retry_after_seconds": self.retry_after_seconds,
        }


def _seconds_until(reset_at: datetime, now: datetime) -> int:
    return max(math.ceil((reset_at - now).total_seconds()), 1)


def format_rate_limit_error(result: RateLimitResult) -> str:
    if result.reason == HOURLY_REQUEST_LIMIT:
        return (
            f"You've reached your hourly request limit ({result.limit} requests). "
            f"Please try again in {result.retry_after_seconds} seconds."
        )
    if result.reason == DAILY_TOKEN_LIMIT:
        return "You've reached your daily AI usage limit. Your limit resets tomorrow."
    if result.reason == MONTHLY_TOKEN_LIMIT:
        return (
            "Your organization has reached its monthly AI usage limit. "
            "Please contact your administrator to upgrade your plan."
        )
    if result.reason == ORG_BUDGET_EXCEEDED:
        return (
            "Your organization's AI budget has been exceeded. "
            "Please contact your administrator."
        )
    if result.reason == CONCURRENT_LIMIT:
        return (
            "Too many simultaneous requests. "
            "Please wait for your current requests to complete."
        )
    return "Rate limit exceeded. Please try again later."


# -- Limiter -----------------------------------------------------------------


class RateLimiter:
    """Quota checks over the usage store.

    Parameters
    ----------
    store : UsageStore
        Source of truth for request counts and token sums.
    overrides : LimitOverrides, optional
        Deployment caps applied on top of tier defaults.
    read_requests_per_hour : int
        Cap for read-only endpoints, tracked in process memory.
    now : callable
        Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        store: UsageStore,
        overrides: LimitOverrides | None = None,
        read_requests_per_hour: int = READ_REQUESTS_PER_HOUR,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._overrides = overrides or LimitOverrides()
        self._read_limit = read_requests_per_hour
        self._now = now
        self._read_counts: dict[str, tuple[datetime, int]] = {}
        self._read_lock = threading.Lock()

    def limits_for(self, organization: Organization) -> TierLimits:
        return limits_for_tier(organization.tier, self._overrides)

    def resolve_monthly_limit(self, organization: Organization) -> int:
        """The org's custom budget wins over every other monthly cap."""
        if organization.monthly_token_budget is not None:
            return organization.monthly_token_budget
        return self.limits_for(organization).monthly_tokens

    def check_ai_rate_limit(self, actor_id: str, organization: Organization) -> RateLimitResult:
        now = self._now()
        limits = self.limits_for(organization)

        hour_start = start_of_hour(now)
        requests = self._store.count_requests(since=hour_start, actor_id=actor_id)
        if requests >= limits.requests_per_hour:
            reset_at = next_hour(now)
            return self._deny(
                HOURLY_REQUEST_LIMIT, requests, limits.requests_per_hour, reset_at, now,
                actor_id=actor_id, org_id=organization.id,
            )

        daily_tokens = self._store.sum_tokens(since=start_of_day(now), actor_id=actor_id)
        if daily_tokens >= limits.daily_tokens:
            return self._deny(
                DAILY_TOKEN_LIMIT, daily_tokens, limits.daily_tokens, next_day(now), now,
                actor_id=actor_id, org_id=organization.id,
            )

        monthly_limit = self.resolve_monthly_limit(organization)
        monthly_tokens = self._store.sum_tokens(since=start_of_month(now), org_id=organization.id)
        if monthly_tokens >= monthly_limit:
            return self._deny(
                MONTHLY_TOKEN_LIMIT, monthly_tokens, monthly_limit, next_month(now), now,
                actor_id=actor_id, org_id=organization.id,
            )

        return RateLimitResult(
            allowed=True, current=requests, limit=limits.requests_per_hour
        )

    def check_read_rate_limit(self, actor_id: str) -> RateLimitResult:
        """Count a read-only request against a process-local hourly window."""
        now = self._now()
        window = start_of_hour(now)
        with self._read_lock:
            started, count = self._read_counts.get(actor_id, (window, 0))
            if started != window:
                count = 0
            if count >= self._read_limit:
                reset_at = next_hour(now)
                return RateLimitResult(
                    allowed=False,
                    current=count,
                    limit=self._read_limit,
                    reason=HOURLY_REQUEST_LIMIT,
                    reset_at=reset_at,
                    retry_after_seconds=_seconds_until(reset_at, now),
                )
            self._read_counts[actor_id] = (window, count + 1)
            return RateLimitResult(allowed=True, current=count + 1, limit=self._read_limit)

    def concurrency_denied(self, active: int, limit: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=False, current=active, limit=limit, reason=CONCURRENT_LIMIT
        )

    def _deny(
        self,
        reason: str,
        current: int,
        limit: int,
        reset_at: datetime,
        now: datetime,
        *,
        actor_id: str,
        org_id: str,
    ) -> RateLimitResult:
        logger.info(
            "rate limit denied",
            extra={"reason": reason, "actor_id": actor_id, "org_id": org_id},
        )
        return RateLimitResult(
            allowed=False,
            current=current,
            limit=limit,
            reason=reason,
            reset_at=reset_at,
            retry_after_seconds=_seconds_until(reset_at, now),
        )
