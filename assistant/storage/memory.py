"""In-process store used for tests and single-node development."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

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


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._usage: list[UsageRecord] = []
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._audit: list[AuditEntry] = []
        self._markers: set[tuple[str, int, str]] = set()
        self._organizations: dict[str, Organization] = {}
        self._members: dict[str, Member] = {}
        self.notifications: list[Notification] = []

    # -- Directory ----------------------------------------------------------

    def save_organization(self, organization: Organization) -> None:
        with self._lock:
            self._organizations[organization.id] = organization

    def save_member(self, member: Member) -> None:
        with self._lock:
            self._members[member.id] = member

    def get_organization(self, org_id: str) -> Organization | None:
        with self._lock:
            return self._organizations.get(org_id)

    def get_member(self, member_id: str) -> Member | None:
        with self._lock:
            return self._members.get(member_id)

    def list_admins(self, org_id: str) -> list[Member]:
        with self._lock:
            return [m for m in self._members.values() if m.org_id == org_id and m.is_admin]

    # -- Usage --------------------------------------------------------------

    def add_usage(self, record: UsageRecord) -> None:
        with self._lock:
            self._usage.append(record)

    def _usage_since(
        self, since: datetime, actor_id: str | None, org_id: str | None
    ) -> list[UsageRecord]:
        return [
            r
            for r in self._usage
            if r.created_at >= since
            and (actor_id is None or r.actor_id == actor_id)
            and (org_id is None or r.org_id == org_id)
        ]

    def count_requests(
        self, *, since: datetime, actor_id: str | None = None, org_id: str | None = None
    ) -> int:
        with self._lock:
            return len(self._usage_since(since, actor_id, org_id))

    def sum_tokens(
        self, *, since: datetime, actor_id: str | None = None, org_id: str | None = None
    ) -> int:
        with self._lock:
            return sum(r.total_tokens for r in self._usage_since(since, actor_id, org_id))

    def list_usage(self, org_id: str, since: datetime) -> list[UsageRecord]:
        with self._lock:
            rows = self._usage_since(since, None, org_id)
        return sorted(rows, key=lambda r: r.created_at)

    # -- Conversations ------------------------------------------------------

    def create_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages.setdefault(conversation.id, [])

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def touch_conversation(self, conversation_id: str, updated_at: datetime) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                self._conversations[conversation_id] = replace(
                    conversation, updated_at=updated_at
                )

    def list_conversations(
        self, org_id: str, actor_id: str, now: datetime, limit: int = 50
    ) -> list[Conversation]:
        with self._lock:
            rows = [
                c
                for c in self._conversations.values()
                if c.org_id == org_id
                and c.actor_id == actor_id
                and (c.expires_at is None or c.expires_at > now)
            ]
        rows.sort(key=lambda c: c.updated_at, reverse=True)
        return rows[:limit]

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            self._messages.pop(conversation_id, None)
            return self._conversations.pop(conversation_id, None) is not None

    def delete_expired_conversations(self, now: datetime) -> int:
        with self._lock:
            expired = [
                cid
                for cid, c in self._conversations.items()
                if c.expires_at is not None and c.expires_at <= now
            ]
            for cid in expired:
                self._conversations.pop(cid, None)
                self._messages.pop(cid, None)
        return len(expired)

    def add_message(self, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(message.conversation_id, []).append(message)

    def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        with self._lock:
            rows = list(self._messages.get(conversation_id, []))
        if limit <= 0:
            return []
        return rows[-limit:]

    def page_messages(
        self, conversation_id: str, cursor: str | None, limit: int
    ) -> list[Message]:
        with self._lock:
            rows = list(self._messages.get(conversation_id, []))
        start = 0
        if cursor:
            for index, message in enumerate(rows):
                if message.id == cursor:
                    start = index + 1
                    break
        return rows[start : start + limit]

    # -- Audit --------------------------------------------------------------

    def add_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    def list_audit_entries(
        self, org_id: str, start: datetime, end: datetime
    ) -> list[AuditEntry]:
        with self._lock:
            return [
                e
                for e in self._audit
                if e.org_id == org_id and start <= e.created_at <= end
            ]

    def list_flagged(self, org_id: str, limit: int) -> list[AuditEntry]:
        with self._lock:
            rows = [e for e in self._audit if e.org_id == org_id and e.flagged]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[:limit]

    def delete_unflagged_before(self, cutoff: datetime, org_id: str | None = None) -> int:
        with self._lock:
            kept = [
                e
                for e in self._audit
                if e.flagged
                or e.created_at >= cutoff
                or (org_id is not None and e.org_id != org_id)
            ]
            removed = len(self._audit) - len(kept)
            self._audit = kept
        return removed

    # -- Budget alert markers -----------------------------------------------

    def has_alert_marker(self, org_id: str, threshold: int, period_key: str) -> bool:
        with self._lock:
            return (org_id, threshold, period_key) in self._markers

    def add_alert_marker(self, marker: BudgetAlertMarker) -> None:
        with self._lock:
            self._markers.add((marker.org_id, marker.threshold, marker.period_key))

    def delete_alert_markers(self, org_id: str) -> int:
        with self._lock:
            doomed = {m for m in self._markers if m[0] == org_id}
            self._markers -= doomed
        return len(doomed)

    # -- Notifications ------------------------------------------------------

    def create_notification(self, notification: Notification) -> None:
        with self._lock:
            self.notifications.append(notification)
