"""Records shared by the limiter, budget, audit and chat layers."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid4().hex


class Tier(Enum):
    FREE = "FREE"
    PLUS = "PLUS"

    @classmethod
    def parse(cls, value: "str | Tier | None") -> "Tier":
        if isinstance(value, Tier):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.FREE


class Role(Enum):
    EMPLOYEE = "EMPLOYEE"
    MANAGER = "MANAGER"
    DIRECTOR = "DIRECTOR"

    @property
    def is_elevated(self) -> bool:
        return self is Role.DIRECTOR


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class UsageRecord:
    org_id: str
    actor_id: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str
    cost_usd: float
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Conversation:
    org_id: str
    actor_id: str
    title: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None


@dataclass
class Message:
    conversation_id: str
    role: MessageRole
    content: str
    function_calls: list[dict[str, Any]] | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DataAccessSummary:
    entity_types: list[str] = field(default_factory=list)
    record_count: int = 0
    sensitive_data: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_types": list(self.entity_types),
            "record_count": self.record_count,
            "sensitive_data": self.sensitive_data,
        }


@dataclass
class AuditEntry:
    org_id: str
    actor_id: str
    query_hash: str
    query_length: int
    functions_called: list[str]
    data_accessed: DataAccessSummary
    tokens_used: int
    response_time_ms: int
    conversation_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    flagged: bool = False
    flag_reasons: list[str] = field(default_factory=list)
    risk_score: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "actor_id": self.actor_id,
            "conversation_id": self.conversation_id,
            "query_hash": self.query_hash,
            "query_length": self.query_length,
            "functions_called": list(self.functions_called),
            "data_accessed": self.data_accessed.as_dict(),
            "tokens_used": self.tokens_used,
            "response_time_ms": self.response_time_ms,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "flagged": self.flagged,
            "flag_reasons": list(self.flag_reasons),
            "risk_score": self.risk_score,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class BudgetAlertMarker:
    org_id: str
    threshold: int
    period_key: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Organization:
    id: str
    name: str = ""
    tier: Tier = Tier.FREE
    ai_chat_enabled: bool = True
    monthly_token_budget: int | None = None
    chat_retention_days: int | None = None


@dataclass
class Member:
    id: str
    org_id: str
    name: str = ""
    email: str = ""
    role: Role = Role.EMPLOYEE

    @property
    def is_admin(self) -> bool:
        return self.role.is_elevated


@dataclass
class Notification:
    recipient_id: str
    org_id: str
    title: str
    message: str
    type: str = "ai_budget"
    link: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
