from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from assistant.domain.types import AuditEntry, Conversation, Message


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)
    conversation_id: str | None = None
    stream: bool = False


class FunctionCallTrace(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class ChatResponse(BaseModel):
    message: str
    conversation_id: str
    function_calls: list[FunctionCallTrace] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None

    @classmethod
    def from_domain(cls, conversation: Conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            expires_at=conversation.expires_at,
        )


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]


class MessageOut(BaseModel):
    id: str
    role: Literal["user", "assistant", "tool"]
    content: str
    function_calls: list[FunctionCallTrace] | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, message: Message) -> "MessageOut":
        return cls(
            id=message.id,
            role=message.role.value,
            content=message.content,
            function_calls=(
                [FunctionCallTrace(**call) for call in message.function_calls]
                if message.function_calls
                else None
            ),
            created_at=message.created_at,
        )


class ConversationMessagesResponse(BaseModel):
    conversation: ConversationSummary
    messages: list[MessageOut]
    next_cursor: str | None = None


class DeleteResponse(BaseModel):
    success: bool = True


class BudgetStatusResponse(BaseModel):
    monthly_tokens_used: int
    monthly_token_limit: int
    percent_used: float
    is_over_budget: bool
    next_threshold: int | None = None


class CountResponse(BaseModel):
    deleted: int


class AuditCleanupRequest(BaseModel):
    retention_days: int | None = Field(default=None, ge=1, le=3650)


class DataAccessOut(BaseModel):
    entity_types: list[str]
    record_count: int
    sensitive_data: bool


class AuditEntryOut(BaseModel):
    id: str
    actor_id: str
    conversation_id: str | None = None
    query_hash: str
    query_length: int
    functions_called: list[str]
    data_accessed: DataAccessOut
    tokens_used: int
    response_time_ms: int
    ip_address: str | None = None
    user_agent: str | None = None
    flagged: bool
    flag_reasons: list[str]
    risk_score: int
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryOut":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            conversation_id=entry.conversation_id,
            query_hash=entry.query_hash,
            query_length=entry.query_length,
            functions_called=list(entry.functions_called),
            data_accessed=DataAccessOut(**entry.data_accessed.as_dict()),
            tokens_used=entry.tokens_used,
            response_time_ms=entry.response_time_ms,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            flagged=entry.flagged,
            flag_reasons=list(entry.flag_reasons),
            risk_score=entry.risk_score,
            created_at=entry.created_at,
        )


class FlaggedQueriesResponse(BaseModel):
    entries: list[AuditEntryOut]
