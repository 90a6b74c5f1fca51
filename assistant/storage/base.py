"""Persistence interfaces consumed by the assistant core."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from assistant.domain.types import (
    AuditEntry,
    BudgetAlertMarker,
    Conversation,
    Member,
    Message,
    Notification,
    Organization,
    UsageRecord,
)


class UsageStore(Protocol):
    def add_usage(self, record: UsageRecord) -> None:
        """Append one usage record. Records are never updated."""

    def count_requests(
        self, *, since: datetime, actor_id: str | None = None, org_id: str | None = None
    ) -> int:
        """Count usage records created at or after *since*."""

    def sum_tokens(
        self, *, since: datetime, actor_id: str | None = None, org_id: str | None = None
    ) -> int:
        """Sum ``total_tokens`` of usage records created at or after *since*."""

    def list_usage(self, org_id: str, since: datetime) -> list[UsageRecord]:
        """Return an organization's usage records since *since*, oldest first."""


class ConversationStore(Protocol):
    def create_conversation(self, conversation: Conversation) -> None: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def touch_conversation(self, conversation_id: str, updated_at: datetime) -> None: ...

    def list_conversations(
        self, org_id: str, actor_id: str, now: datetime, limit: int = 50
    ) -> list[Conversation]:
        """Non-expired conversations of an actor, most recently updated first."""

    def delete_conversation(self, conversation_id: str) -> bool: ...

    def delete_expired_conversations(self, now: datetime) -> int: ...

    def add_message(self, message: Message) -> None: ...

    def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The newest *limit* messages, returned in chronological order."""

    def page_messages(
        self, conversation_id: str, cursor: str | None, limit: int
    ) -> list[Message]:
        """Messages after the message id *cursor*, in chronological order."""


class AuditStore(Protocol):
    def add_audit_entry(self, entry: AuditEntry) -> None: ...

    def list_audit_entries(
        self, org_id: str, start: datetime, end: datetime
    ) -> list[AuditEntry]: ...

    def list_flagged(self, org_id: str, limit: int) -> list[AuditEntry]:
        """Most recent flagged entries first."""

    def delete_unflagged_before(self, cutoff: datetime, org_id: str | None = None) -> int:
        """Drop unflagged entries older than *cutoff*; every org when *org_id* is None."""


class AlertMarkerStore(Protocol):
    def has_alert_marker(self, org_id: str, threshold: int, period_key: str) -> bool: ...

    def add_alert_marker(self, marker: BudgetAlertMarker) -> None: ...

    def delete_alert_markers(self, org_id: str) -> int: ...


class Directory(Protocol):
    def get_organization(self, org_id: str) -> Organization | None: ...

    def get_member(self, member_id: str) -> Member | None: ...

    def list_admins(self, org_id: str) -> list[Member]: ...


class NotificationSink(Protocol):
    def create_notification(self, notification: Notification) -> None: ...


class Store(
    UsageStore,
    ConversationStore,
    AuditStore,
    AlertMarkerStore,
    Directory,
    NotificationSink,
    Protocol,
):
    """Every persistence capability in one object."""
