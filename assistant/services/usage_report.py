"""Administrator usage report for one organization."""

from datetime import datetime, timedelta
from typing import Any, Protocol

from assistant.audit.logger import AuditLogger
from assistant.budget.tracker import BudgetTracker
from assistant.domain.types import Organization
from assistant.limits.rate_limiter import RateLimiter, start_of_day, start_of_month
from assistant.storage.base import Directory, UsageStore

FLAGGED_PREVIEW_LIMIT = 10


class ReportStore(UsageStore, Directory, Protocol):
    pass


def build_usage_report(
    *,
    store: ReportStore,
    organization: Organization,
    rate_limiter: RateLimiter,
    budget_tracker: BudgetTracker,
    audit_logger: AuditLogger,
    days: int,
    now: datetime,
) -> dict[str, Any]:
    month_start = start_of_month(now)
    window_start = start_of_day(now) - timedelta(days=days - 1)
    records = store.list_usage(organization.id, min(month_start, window_start))

    monthly = [r for r in records if r.created_at >= month_start]
    status = budget_tracker.get_budget_status(organization)

    by_actor: dict[str, dict[str, Any]] = {}
    for record in monthly:
        row = by_actor.setdefault(
            record.actor_id,
            {"actor_id": record.actor_id, "name": "", "tokens": 0, "requests": 0, "cost_usd": 0.0},
        )
        row["tokens"] += record.total_tokens
        row["requests"] += 1
        row["cost_usd"] += record.cost_usd
    for actor_id, row in by_actor.items():
        member = store.get_member(actor_id)
        row["name"] = member.name if member else ""
        row["cost_usd"] = round(row["cost_usd"], 6)

    daily: dict[str, dict[str, int]] = {
        (window_start + timedelta(days=offset)).date().isoformat(): {"tokens": 0, "requests": 0}
        for offset in range(days)
    }
    for record in records:
        bucket = daily.get(record.created_at.date().isoformat())
        if bucket is None or record.created_at < window_start:
            continue
        bucket["tokens"] += record.total_tokens
        bucket["requests"] += 1

    audit = audit_logger.get_audit_summary(organization.id, month_start, now)
    flagged = audit_logger.get_flagged_queries(organization.id, FLAGGED_PREVIEW_LIMIT)
    limits = rate_limiter.limits_for(organization)

    return {
        "overview": {
            "monthly_tokens_used": status.monthly_tokens_used,
            "monthly_token_limit": status.monthly_token_limit,
            "monthly_request_count": len(monthly),
            "percent_used": status.percent_used,
            "estimated_cost_usd": round(sum(r.cost_usd for r in monthly), 6),
            "tier": organization.tier.value,
        },
        "usage_by_user": sorted(by_actor.values(), key=lambda row: row["tokens"], reverse=True),
        "daily_usage": [
            {"date": day, **values} for day, values in sorted(daily.items())
        ],
        "audit_summary": audit.as_dict(),
        "flagged_queries": [entry.as_dict() for entry in flagged],
        "limits": {
            "daily": limits.daily_tokens,
            "monthly": status.monthly_token_limit,
            "requests_per_hour": limits.requests_per_hour,
        },
    }
