from datetime import UTC, datetime

from assistant.budget.tracker import BUDGET_LINK, BudgetTracker
from assistant.domain.types import Member, Organization, Role, UsageRecord
from assistant.limits.rate_limiter import RateLimiter
from assistant.storage.memory import InMemoryStore

NOW = datetime(2026, 3, 15, 10, 30, tzinfo=UTC)


def _tracker(store: InMemoryStore, now: datetime = NOW) -> BudgetTracker:
    return BudgetTracker(store, RateLimiter(store, now=lambda: now), now=lambda: now)


def _store_with_admins() -> InMemoryStore:
    store = InMemoryStore()
    store.save_member(Member(id="admin-1", org_id="org-a", role=Role.DIRECTOR))
    store.save_member(Member(id="admin-2", org_id="org-a", role=Role.DIRECTOR))
    store.save_member(Member(id="user-1", org_id="org-a", role=Role.EMPLOYEE))
    return store


def _spend(store: InMemoryStore, tokens: int, created_at: datetime = NOW) -> None:
    store.add_usage(
        UsageRecord(
            org_id="org-a",
            actor_id="user-1",
            prompt_tokens=tokens,
            completion_tokens=0,
            total_tokens=tokens,
            model="gpt-4o-mini",
            cost_usd=0.0,
            created_at=created_at,
        )
    )


def test_budget_status_reports_percent_and_next_threshold() -> None:
    store = InMemoryStore()
    _spend(store, 80_000)
    organization = Organization(id="org-a")

    status = _tracker(store).get_budget_status(organization)

    assert status.monthly_tokens_used == 80_000
    assert status.monthly_token_limit == 100_000
    assert status.percent_used == 80.0
    assert status.is_over_budget is False
    assert status.next_threshold == 90


def test_usage_from_last_month_is_ignored() -> None:
    store = InMemoryStore()
    _spend(store, 99_000, created_at=datetime(2026, 2, 27, tzinfo=UTC))
    status = _tracker(store).get_budget_status(Organization(id="org-a"))
    assert status.monthly_tokens_used == 0
    assert status.next_threshold == 75


def test_zero_budget_is_fully_used() -> None:
    status = _tracker(InMemoryStore()).get_budget_status(
        Organization(id="org-a", monthly_token_budget=0)
    )
    assert status.percent_used == 100.0
    assert status.is_over_budget is True
    assert status.next_threshold is None


def test_each_threshold_alerts_admins_once_per_month() -> None:
    store = _store_with_admins()
    _spend(store, 92_000)
    tracker = _tracker(store)
    organization = Organization(id="org-a")

    assert tracker.check_budget_and_notify(organization) == [75, 90]
    assert tracker.check_budget_and_notify(organization) == []

    recipients = sorted(n.recipient_id for n in store.notifications)
    assert recipients == ["admin-1", "admin-1", "admin-2", "admin-2"]
    assert all(n.link == BUDGET_LINK for n in store.notifications)
    assert {n.title for n in store.notifications} == {
        "AI budget at 75%",
        "AI budget critical: 90% used",
    }


def test_crossing_a_higher_threshold_later_only_sends_the_new_alert() -> None:
    store = _store_with_admins()
    _spend(store, 76_000)
    tracker = _tracker(store)
    organization = Organization(id="org-a")

    assert tracker.check_budget_and_notify(organization) == [75]
    _spend(store, 30_000)
    assert tracker.check_budget_and_notify(organization) == [90, 100]
    assert len(store.notifications) == 6


def test_new_month_alerts_again() -> None:
    store = _store_with_admins()
    _spend(store, 80_000)
    organization = Organization(id="org-a")
    assert _tracker(store).check_budget_and_notify(organization) == [75]

    april = datetime(2026, 4, 2, 9, tzinfo=UTC)
    _spend(store, 80_000, created_at=april)
    assert _tracker(store, now=april).check_budget_and_notify(organization) == [75]


def test_reset_monthly_alerts_allows_realerting() -> None:
    store = _store_with_admins()
    _spend(store, 80_000)
    tracker = _tracker(store)
    organization = Organization(id="org-a")

    tracker.check_budget_and_notify(organization)
    assert tracker.reset_monthly_alerts("org-a") == 1
    assert tracker.check_budget_and_notify(organization) == [75]


def test_track_token_usage_swallows_notification_failures() -> None:
    class _FailingStore(InMemoryStore):
        def list_admins(self, org_id: str) -> list[Member]:
            raise RuntimeError("directory unavailable")

    store = _FailingStore()
    _spend(store, 95_000)
    tracker = _tracker(store)

    tracker.track_token_usage(Organization(id="org-a"))

    assert store.notifications == []
    assert store.has_alert_marker("org-a", 90, "2026-03") is True
