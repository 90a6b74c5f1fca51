"""SQLite-backed store for usage, conversations, audit entries and alert markers."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from assistant.domain.types import (
    AuditEntry,
    BudgetAlertMarker,
    Conversation,
    DataAccessSummary,
    Member,
    Message,
    MessageRole,
    Notification,
    Organization,
    Role,
    Tier,
    UsageRecord,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        tier TEXT NOT NULL,
        ai_chat_enabled INTEGER NOT NULL,
        monthly_token_budget INTEGER,
        chat_retention_days INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        org_id TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        model TEXT NOT NULL,
        cost_usd REAL NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_org_created ON usage_records(org_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_usage_actor_created ON usage_records(actor_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        title TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        expires_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_actor ON conversations(org_id, actor_id)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        function_calls_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        conversation_id TEXT,
        query_hash TEXT NOT NULL,
        query_length INTEGER NOT NULL,
        functions_called_json TEXT NOT NULL,
        data_accessed_json TEXT NOT NULL,
        tokens_used INTEGER NOT NULL,
        response_time_ms INTEGER NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        flagged INTEGER NOT NULL,
        flag_reasons_json TEXT NOT NULL,
        risk_score INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_org_created ON audit_logs(org_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS budget_alerts (
        org_id TEXT NOT NULL,
        threshold INTEGER NOT NULL,
        period_key TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (org_id, threshold, period_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        type TEXT NOT NULL,
        link TEXT,
        created_at TEXT NOT NULL
    )
    """,
)


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so lexical order matches chronological order.
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(raw_value: str | None) -> datetime | None:
    if raw_value is None:
        return None
    candidate = raw_value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _scope(
    since: datetime, actor_id: str | None, org_id: str | None
) -> tuple[str, list[Any]]:
    clauses = ["created_at >= ?"]
    params: list[Any] = [_ts(since)]
    if actor_id is not None:
        clauses.append("actor_id = ?")
        params.append(actor_id)
    if org_id is not None:
        clauses.append("org_id = ?")
        params.append(org_id)
    return " AND ".join(clauses), params


@dataclass
class SQLiteStore:
    path: Path

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path))
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_schema(self) -> None:
        with self._connect() as connection:
            for statement in _SCHEMA:
                connection.execute(statement)
            connection.commit()

    # -- Directory ----------------------------------------------------------

    def save_organization(self, organization: Organization) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT OR REPLACE INTO organizations (
                    id, name, tier, ai_chat_enabled, monthly_token_budget, chat_retention_days
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    organization.id,
                    organization.name,
                    organization.tier.value,
                    int(organization.ai_chat_enabled),
                    organization.monthly_token_budget,
                    organization.chat_retention_days,
                ),
            )
            connection.commit()

    def save_member(self, member: Member) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO members (id, org_id, name, email, role) "
                "VALUES (?, ?, ?, ?, ?)",
                (member.id, member.org_id, member.name, member.email, member.role.value),
            )
            connection.commit()

    def get_organization(self, org_id: str) -> Organization | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM organizations WHERE id = ?", (org_id,)
            ).fetchone()
        if row is None:
            return None
        return Organization(
            id=row["id"],
            name=row["name"],
            tier=Tier.parse(row["tier"]),
            ai_chat_enabled=bool(row["ai_chat_enabled"]),
            monthly_token_budget=row["monthly_token_budget"],
            chat_retention_days=row["chat_retention_days"],
        )

    @staticmethod
    def _member_from_row(row: sqlite3.Row) -> Member:
        return Member(
            id=row["id"],
            org_id=row["org_id"],
            name=row["name"],
            email=row["email"],
            role=Role(row["role"]),
        )

    def get_member(self, member_id: str) -> Member | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM members WHERE id = ?", (member_id,)
            ).fetchone()
        return self._member_from_row(row) if row is not None else None

    def list_admins(self, org_id: str) -> list[Member]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM members WHERE org_id = ? AND role = ?",
                (org_id, Role.DIRECTOR.value),
            ).fetchall()
        return [self._member_from_row(row) for row in rows]

    # -- Usage --------------------------------------------------------------

    def add_usage(self, record: UsageRecord) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO usage_records (
                    org_id, actor_id, prompt_tokens, completion_tokens,
                    total_tokens, model, cost_usd, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.org_id,
                    record.actor_id,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.total_tokens,
                    record.model,
                    record.cost_usd,
                    _ts(record.created_at),
                ),
            )
            connection.commit()

    def count_requests(
        self, *, since: datetime, actor_id: str | None = None, org_id: str | None = None
    ) -> int:
        where, params = _scope(since, actor_id, org_id)
        with self._connect() as connection:
            row = connection.execute(
                f"SELECT COUNT(*) AS n FROM usage_records WHERE {where}", tuple(params)
            ).fetchone()
        return int(row["n"])

    def sum_tokens(
        self, *, since: datetime, actor_id: str | None = None, org_id: str | None = None
    ) -> int:
        where, params = _scope(since, actor_id, org_id)
        with self._connect() as connection:
            row = connection.execute(
                f"SELECT COALESCE(SUM(total_tokens), 0) AS n FROM usage_records WHERE {where}",
                tuple(params),
            ).fetchone()
        return int(row["n"])

    def list_usage(self, org_id: str, since: datetime) -> list[UsageRecord]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM usage_records WHERE org_id = ? AND created_at >= ? "
                "ORDER BY created_at ASC, id ASC",
                (org_id, _ts(since)),
            ).fetchall()
        return [
            UsageRecord(
                org_id=row["org_id"],
                actor_id=row["actor_id"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                total_tokens=row["total_tokens"],
                model=row["model"],
                cost_usd=row["cost_usd"],
                created_at=_parse_ts(row["created_at"]) or datetime.now(UTC),
            )
            for row in rows
        ]

    # -- Conversations ------------------------------------------------------

    @staticmethod
    def _conversation_from_row(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            org_id=row["org_id"],
            actor_id=row["actor_id"],
            title=row["title"],
            created_at=_parse_ts(row["created_at"]) or datetime.now(UTC),
            updated_at=_parse_ts(row["updated_at"]) or datetime.now(UTC),
            expires_at=_parse_ts(row["expires_at"]),
        )

    def create_conversation(self, conversation: Conversation) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO conversations (
                    id, org_id, actor_id, title, created_at, updated_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.org_id,
                    conversation.actor_id,
                    conversation.title,
                    _ts(conversation.created_at),
                    _ts(conversation.updated_at),
                    _ts(conversation.expires_at) if conversation.expires_at else None,
                ),
            )
            connection.commit()

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return self._conversation_from_row(row) if row is not None else None

    def touch_conversation(self, conversation_id: str, updated_at: datetime) -> None:
        with self._connect() as connection:
            connection.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (_ts(updated_at), conversation_id),
            )
            connection.commit()

    def list_conversations(
        self, org_id: str, actor_id: str, now: datetime, limit: int = 50
    ) -> list[Conversation]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM conversations
                WHERE org_id = ? AND actor_id = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (org_id, actor_id, _ts(now), limit),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._connect() as connection:
            connection.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            cursor = connection.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            connection.commit()
        return int(cursor.rowcount or 0) > 0

    def delete_expired_conversations(self, now: datetime) -> int:
        with self._connect() as connection:
            connection.execute(
                """
                DELETE FROM messages WHERE conversation_id IN (
                    SELECT id FROM conversations
                    WHERE expires_at IS NOT NULL AND expires_at <= ?
                )
                """,
                (_ts(now),),
            )
            cursor = connection.execute(
                "DELETE FROM conversations WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (_ts(now),),
            )
            connection.commit()
        return int(cursor.rowcount or 0)

    def add_message(self, message: Message) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO messages (
                    id, conversation_id, role, content, function_calls_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.role.value,
                    message.content,
                    json.dumps(message.function_calls, ensure_ascii=True)
                    if message.function_calls is not None
                    else None,
                    _ts(message.created_at),
                ),
            )
            connection.commit()

    @staticmethod
    def _message_from_row(row: sqlite3.Row) -> Message:
        raw_calls = row["function_calls_json"]
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            function_calls=json.loads(raw_calls) if raw_calls else None,
            created_at=_parse_ts(row["created_at"]) or datetime.now(UTC),
        )

    def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
                (conversation_id, limit),
            ).fetchall()
        return [self._message_from_row(row) for row in reversed(rows)]

    def page_messages(
        self, conversation_id: str, cursor: str | None, limit: int
    ) -> list[Message]:
        after_seq = 0
        with self._connect() as connection:
            if cursor:
                cursor_row = connection.execute(
                    "SELECT seq FROM messages WHERE id = ? AND conversation_id = ?",
                    (cursor, conversation_id),
                ).fetchone()
                if cursor_row is not None:
                    after_seq = int(cursor_row["seq"])
            rows = connection.execute(
                "SELECT * FROM messages WHERE conversation_id = ? AND seq > ? "
                "ORDER BY seq ASC LIMIT ?",
                (conversation_id, after_seq, limit),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    # -- Audit --------------------------------------------------------------

    def add_audit_entry(self, entry: AuditEntry) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO audit_logs (
                    id, org_id, actor_id, conversation_id, query_hash, query_length,
                    functions_called_json, data_accessed_json, tokens_used,
                    response_time_ms, ip_address, user_agent, flagged,
                    flag_reasons_json, risk_score, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.org_id,
                    entry.actor_id,
                    entry.conversation_id,
                    entry.query_hash,
                    entry.query_length,
                    json.dumps(entry.functions_called, ensure_ascii=True),
                    json.dumps(entry.data_accessed.as_dict(), ensure_ascii=True),
                    entry.tokens_used,
                    entry.response_time_ms,
                    entry.ip_address,
                    entry.user_agent,
                    int(entry.flagged),
                    json.dumps(entry.flag_reasons, ensure_ascii=True),
                    entry.risk_score,
                    _ts(entry.created_at),
                ),
            )
            connection.commit()

    @staticmethod
    def _audit_from_row(row: sqlite3.Row) -> AuditEntry:
        accessed = json.loads(row["data_accessed_json"])
        return AuditEntry(
            id=row["id"],
            org_id=row["org_id"],
            actor_id=row["actor_id"],
            conversation_id=row["conversation_id"],
            query_hash=row["query_hash"],
            query_length=row["query_length"],
            functions_called=json.loads(row["functions_called_json"]),
            data_accessed=DataAccessSummary(
                entity_types=list(accessed.get("entity_types", [])),
                record_count=int(accessed.get("record_count", 0)),
                sensitive_data=bool(accessed.get("sensitive_data", False)),
            ),
            tokens_used=row["tokens_used"],
            response_time_ms=row["response_time_ms"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            flagged=bool(row["flagged"]),
            flag_reasons=json.loads(row["flag_reasons_json"]),
            risk_score=row["risk_score"],
            created_at=_parse_ts(row["created_at"]) or datetime.now(UTC),
        )

    def list_audit_entries(
        self, org_id: str, start: datetime, end: datetime
    ) -> list[AuditEntry]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM audit_logs WHERE org_id = ? AND created_at >= ? "
                "AND created_at <= ? ORDER BY created_at ASC",
                (org_id, _ts(start), _ts(end)),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    def list_flagged(self, org_id: str, limit: int) -> list[AuditEntry]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM audit_logs WHERE org_id = ? AND flagged = 1 "
                "ORDER BY created_at DESC LIMIT ?",
                (org_id, limit),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    def delete_unflagged_before(self, cutoff: datetime, org_id: str | None = None) -> int:
        query = "DELETE FROM audit_logs WHERE created_at < ? AND flagged = 0"
        params: tuple[str, ...] = (_ts(cutoff),)
        if org_id is not None:
            query += " AND org_id = ?"
            params += (org_id,)
        with self._connect() as connection:
            cursor = connection.execute(query, params)
            connection.commit()
        return int(cursor.rowcount or 0)

    # -- Budget alert markers -----------------------------------------------

    def has_alert_marker(self, org_id: str, threshold: int, period_key: str) -> bool:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT 1 FROM budget_alerts WHERE org_id = ? AND threshold = ? "
                "AND period_key = ?",
                (org_id, threshold, period_key),
            ).fetchone()
        return row is not None

    def add_alert_marker(self, marker: BudgetAlertMarker) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR IGNORE INTO budget_alerts (org_id, threshold, period_key, created_at) "
                "VALUES (?, ?, ?, ?)",
                (marker.org_id, marker.threshold, marker.period_key, _ts(marker.created_at)),
            )
            connection.commit()

    def delete_alert_markers(self, org_id: str) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM budget_alerts WHERE org_id = ?", (org_id,)
            )
            connection.commit()
        return int(cursor.rowcount or 0)

    # -- Notifications ------------------------------------------------------

    def create_notification(self, notification: Notification) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO notifications (
                    id, recipient_id, org_id, title, message, type, link, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.id,
                    notification.recipient_id,
                    notification.org_id,
                    notification.title,
                    notification.message,
                    notification.type,
                    notification.link,
                    _ts(notification.created_at),
                ),
            )
            connection.commit()

    def list_notifications(self, recipient_id: str) -> list[Notification]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM notifications WHERE recipient_id = ? ORDER BY created_at ASC",
                (recipient_id,),
            ).fetchall()
        return [
            Notification(
                id=row["id"],
                recipient_id=row["recipient_id"],
                org_id=row["org_id"],
                title=row["title"],
                message=row["message"],
                type=row["type"],
                link=row["link"],
                created_at=_parse_ts(row["created_at"]) or datetime.now(UTC),
            )
            for row in rows
        ]
