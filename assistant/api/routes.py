from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from assistant.core.errors import request_id_from_request
from assistant.models.chat import (
    AuditCleanupRequest,
    AuditEntryOut,
    BudgetStatusResponse,
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    ConversationMessagesResponse,
    ConversationSummary,
    CountResponse,
    DeleteResponse,
    FlaggedQueriesResponse,
    MessageOut,
)
from assistant.services.chat_service import ChatService, RequestMeta

router = APIRouter()


def _service(request: Request) -> ChatService:
    service: ChatService = request.app.state.chat_service
    return service


def _identity(request: Request) -> tuple[str, str]:
    return request.state.org_id, request.state.actor_id


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _meta(request: Request) -> RequestMeta:
    return RequestMeta(
        request_id=request_id_from_request(request),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/v1/chat", response_model=ChatResponse)
async def chat(request: Request, payload: ChatRequest) -> ChatResponse | StreamingResponse:
    service = _service(request)
    org_id, actor_id = _identity(request)
    if payload.stream:
        frames = await service.handle_chat_stream(
            org_id, actor_id, payload.message, payload.conversation_id, _meta(request)
        )
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
    result = await service.handle_chat(
        org_id, actor_id, payload.message, payload.conversation_id, _meta(request)
    )
    return ChatResponse.model_validate(result.as_dict())


@router.get("/v1/chat/conversations", response_model=ConversationListResponse)
def list_conversations(request: Request) -> ConversationListResponse:
    org_id, actor_id = _identity(request)
    conversations = _service(request).list_conversations(org_id, actor_id)
    return ConversationListResponse(
        conversations=[ConversationSummary.from_domain(item) for item in conversations]
    )


@router.get(
    "/v1/chat/conversations/{conversation_id}", response_model=ConversationMessagesResponse
)
def get_conversation(
    request: Request,
    conversation_id: str,
    cursor: str | None = None,
    limit: int = Query(default=50, ge=1, le=100),
) -> ConversationMessagesResponse:
    org_id, actor_id = _identity(request)
    page = _service(request).get_conversation(
        org_id, actor_id, conversation_id, cursor=cursor, limit=limit
    )
    return ConversationMessagesResponse(
        conversation=ConversationSummary.from_domain(page.conversation),
        messages=[MessageOut.from_domain(item) for item in page.messages],
        next_cursor=page.next_cursor,
    )


@router.delete("/v1/chat/conversations/{conversation_id}", response_model=DeleteResponse)
def delete_conversation(request: Request, conversation_id: str) -> DeleteResponse:
    org_id, actor_id = _identity(request)
    _service(request).delete_conversation(org_id, actor_id, conversation_id)
    return DeleteResponse()


@router.get("/v1/admin/ai-usage")
def ai_usage(request: Request, days: int = Query(default=30, ge=1, le=90)) -> dict[str, Any]:
    org_id, actor_id = _identity(request)
    return _service(request).usage_report(org_id, actor_id, days=days)


@router.get("/v1/admin/ai-budget", response_model=BudgetStatusResponse)
def ai_budget(request: Request) -> BudgetStatusResponse:
    org_id, actor_id = _identity(request)
    status = _service(request).budget_status(org_id, actor_id)
    return BudgetStatusResponse.model_validate(status.as_dict())


@router.post("/v1/admin/ai-budget/reset-alerts", response_model=CountResponse)
def reset_budget_alerts(request: Request) -> CountResponse:
    org_id, actor_id = _identity(request)
    return CountResponse(deleted=_service(request).reset_budget_alerts(org_id, actor_id))


@router.get("/v1/admin/ai-audit/summary")
def ai_audit_summary(
    request: Request, start: datetime | None = None, end: datetime | None = None
) -> dict[str, Any]:
    org_id, actor_id = _identity(request)
    return _service(request).audit_summary(org_id, actor_id, start=start, end=end)


@router.get("/v1/admin/ai-audit/flagged", response_model=FlaggedQueriesResponse)
def ai_audit_flagged(
    request: Request, limit: int = Query(default=50, ge=1, le=200)
) -> FlaggedQueriesResponse:
    org_id, actor_id = _identity(request)
    entries = _service(request).flagged_queries(org_id, actor_id, limit=limit)
    return FlaggedQueriesResponse(entries=[AuditEntryOut.from_domain(item) for item in entries])


@router.post("/v1/admin/ai-audit/cleanup", response_model=CountResponse)
def ai_audit_cleanup(
    request: Request, payload: AuditCleanupRequest | None = None
) -> CountResponse:
    org_id, actor_id = _identity(request)
    retention_days = payload.retention_days if payload else None
    deleted = _service(request).cleanup_audit_logs(org_id, actor_id, retention_days)
    return CountResponse(deleted=deleted)
