"""Organization-level monthly token budget status and threshold alerts.

Monthly usage is always the sum of recorded usage since the first of the
current UTC month; no separate counter is kept.  Each threshold alerts at
most once per ``YYYY-MM`` period, guarded by a persisted marker.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from assistant.domain.types import BudgetAlertMarker, Notification, Organization, utcnow
from assistant.limits.rate_limiter import RateLimiter, period_key, start_of_month
from assistant.storage.base import AlertMarkerStore, Directory, NotificationSink, UsageStore

logger = logging.getLogger("aia.budget")

ALERT_THRESHOLDS: tuple[int, ...] = (75, 90, 100)
BUDGET_LINK = "/admin/settings/ai-usage"


class BudgetStore(UsageStore, AlertMarkerStore, Directory, NotificationSink, Protocol):
    pass


@dataclass(frozen=True)
class BudgetStatus:
    monthly_tokens_used: int
    monthly_token_limit: int
    percent_used: float
    is_over_budget: bool
    next_threshold: int | None

    def as_dict(self) -> dict[str, object]:
        return {
            "monthly_tokens_used": self.monthly_tokens_used,
            "monthly_token_limit": self.monthly_token_limit,
            "percent_used": self.percent_used,
            "is_over_budget": self.is_over_budget,
            "next_threshold": self.next_threshold,
        }


def _alert_text(threshold: int, status: BudgetStatus) -> tuple[str, str]:
    usage = f"{status.monthly_tokens_used:,} of {status.monthly_token_limit:,} tokens"
    if threshold >= 100:
        return (
            "AI budget exceeded",
            f"Your organization has used its entire monthly AI budget ({usage}). "
            "AI chat is limited until the budget resets next month.",
        )
    if threshold >= 90:
        return (
            "AI budget critical: 90% used",
            f"Your organization has used {status.percent_used:.0f}% of its monthly AI "
            f"budget ({usage}). Consider upgrading your plan to avoid interruption.",
        )
    return (
        f"AI budget at {threshold}%",
        f"Your organization has used {status.percent_used:.0f}% of its monthly AI "
        f"budget ({usage}).",
    )


class BudgetTracker:
    def __init__(
        self,
        store: BudgetStore,
        rate_limiter: RateLimiter,
        thresholds: tuple[int, ...] = ALERT_THRESHOLDS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._thresholds = tuple(sorted(thresholds))
        self._now = now

    def get_budget_status(self, organization: Organization) -> BudgetStatus:
        now = self._now()
        used = self._store.sum_tokens(since=start_of_month(now), org_id=organization.id)
        limit = self._rate_limiter.resolve_monthly_limit(organization)
        if limit > 0:
            percent = round(used / limit * 100, 2)
        else:
            percent = 100.0
        return BudgetStatus(
            monthly_tokens_used=used,
            monthly_token_limit=limit,
            percent_used=percent,
            is_over_budget=used >= limit,
            next_threshold=next((t for t in self._thresholds if percent < t), None),
        )

    def check_budget_and_notify(self, organization: Organization) -> list[int]:
        """Send alerts for newly crossed thresholds; return the thresholds alerted."""
        status = self.get_budget_status(organization)
        key = period_key(self._now())
        alerted: list[int] = []
        for threshold in self._thresholds:
            if status.percent_used < threshold:
                break
            if self._store.has_alert_marker(organization.id, threshold, key):
                continue
            self._notify_admins(organization, threshold, status)
            self._store.add_alert_marker(
                BudgetAlertMarker(org_id=organization.id, threshold=threshold, period_key=key)
            )
            alerted.append(threshold)
            logger.warning(
                "budget threshold crossed",
                extra={"org_id": organization.id, "threshold": threshold},
            )
        return alerted

    def reset_monthly_alerts(self, organization_id: str) -> int:
        return self._store.delete_alert_markers(organization_id)

    def track_token_usage(self, organization: Organization) -> None:
        """Post-turn hook; never raises."""
        try:
            self.check_budget_and_notify(organization)
        except Exception:
            logger.exception("budget tracking failed", extra={"org_id": organization.id})

    def _notify_admins(
        self, organization: Organization, threshold: int, status: BudgetStatus
    ) -> None:
        title, message = _alert_text(threshold, status)
        try:
            admins = self._store.list_admins(organization.id)
        except Exception:
            logger.exception("budget alert admin lookup failed", extra={"org_id": organization.id})
            return
        for admin in admins:
            try:
                self._store.create_notification(
                    Notification(
                        recipient_id=admin.id,
                        org_id=organization.id,
                        title=title,
                        message=message,
                        link=BUDGET_LINK,
                    )
                )
            except Exception:
                logger.exception(
                    "budget alert notification failed",
                    extra={"org_id": organization.id, "actor_id": admin.id},
                )
