import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from time import perf_counter
from typing import Any

from assistant.audit.logger import AuditLogger, create_audit_entry
from assistant.budget.tracker import BudgetStatus, BudgetTracker
from assistant.config.settings import Settings
from assistant.core.errors import (
    InputBlockedError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from assistant.domain.types import AuditEntry, Conversation, Member, Organization, utcnow
from assistant.limits.concurrency import SlotLimiter
from assistant.limits.rate_limiter import RateLimiter, format_rate_limit_error, start_of_month
from assistant.metrics import (
    record_blocked_input,
    record_flagged_input,
    record_rate_limit_denial,
    record_turn,
)
from assistant.security.sanitizer import InputSanitizer, SanitizationResult
from assistant.services.orchestrator import (
    ChatContext,
    ChatOrchestrator,
    ChatResult,
    ConversationPage,
    DoneEvent,
    ErrorEvent,
)
from assistant.services.usage_report import build_usage_report
from assistant.storage.base import Store

logger = logging.getLogger("aia.chat")

CHAT_DISABLED_MESSAGE = (
    "AI chat is not enabled for your organization. Please contact your administrator."
)


@dataclass(frozen=True)
class RequestMeta:
    request_id: str
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class _Admitted:
    organization: Organization
    context: ChatContext
    sanitization: SanitizationResult


class ChatService:
    """Request pipeline in front of the orchestrator.

    Order: concurrency slot, org switch, quota checks, hard block,
    sanitization, orchestrated turn, audit, budget tracking.  Every
    denial happens before any model spend.
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        orchestrator: ChatOrchestrator,
        sanitizer: InputSanitizer,
        rate_limiter: RateLimiter,
        concurrency: SlotLimiter,
        audit_logger: AuditLogger,
        budget_tracker: BudgetTracker,
        now: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._store = store
        self._orchestrator = orchestrator
        self._sanitizer = sanitizer
        self._rate_limiter = rate_limiter
        self._concurrency = concurrency
        self._audit_logger = audit_logger
        self._budget_tracker = budget_tracker
        self._now = now

    # -- Identity -----------------------------------------------------------

    def resolve_actor(self, org_id: str, actor_id: str) -> tuple[Organization, Member]:
        organization = self._store.get_organization(org_id)
        if organization is None:
            raise NotFoundError("Organization not found", code="organization_not_found")
        member = self._store.get_member(actor_id)
        if member is None or member.org_id != org_id:
            raise PermissionDeniedError("Not a member of this organization", code="not_a_member")
        return organization, member

    @staticmethod
    def context_for(organization: Organization, member: Member) -> ChatContext:
        return ChatContext(
            org_id=organization.id,
            actor_id=member.id,
            role=member.role,
            org_name=organization.name,
        )

    # -- Chat ---------------------------------------------------------------

    async def handle_chat(
        self,
        org_id: str,
        actor_id: str,
        message: str,
        conversation_id: str | None,
        meta: RequestMeta,
    ) -> ChatResult:
        started = perf_counter()
        self._acquire_slot(actor_id, meta)
        outcome = "rejected"
        try:
            admitted = self._admit(org_id, actor_id, message, meta)
            outcome = "error"
            try:
                result = await self._orchestrator.process_chat(
                    admitted.sanitization.sanitized, admitted.context, conversation_id
                )
            except UpstreamError:
                outcome = "upstream_error"
                raise
            latency_s = perf_counter() - started
            self._write_audit(
                admitted,
                query=message,
                conversation_id=result.conversation_id,
                function_calls=result.function_calls,
                tokens_used=result.tokens_used,
                latency_s=latency_s,
                meta=meta,
            )
            self._budget_tracker.track_token_usage(admitted.organization)
            outcome = "ok"
            logger.info(
                "chat turn completed",
                extra={
                    "request_id": meta.request_id,
                    "org_id": org_id,
                    "actor_id": actor_id,
                    "conversation_id": result.conversation_id,
                    "functions_called": [c["name"] for c in result.function_calls],
                    "latency_ms": int(latency_s * 1000),
                },
            )
            record_turn(
                outcome,
                self._settings.default_model,
                latency_s,
                tokens=result.tokens_used,
                function_calls=len(result.function_calls),
            )
            return result
        except Exception:
            if outcome != "ok":
                record_turn(outcome, self._settings.default_model, perf_counter() - started)
            raise
        finally:
            self._concurrency.release(actor_id)

    async def handle_chat_stream(
        self,
        org_id: str,
        actor_id: str,
        message: str,
        conversation_id: str | None,
        meta: RequestMeta,
    ) -> AsyncIterator[str]:
        """Admit the request eagerly, then return the SSE frame iterator.

        Admission errors raise before any frame is produced; the slot is
        released when the returned iterator finishes or is closed.
        """
        started = perf_counter()
        self._acquire_slot(actor_id, meta)
        try:
            admitted = self._admit(org_id, actor_id, message, meta)
        except BaseException:
            self._concurrency.release(actor_id)
            raise

        async def event_stream() -> AsyncIterator[str]:
            outcome = "cancelled"
            events = self._orchestrator.process_chat_stream(
                admitted.sanitization.sanitized, admitted.context, conversation_id
            )
            try:
                async for event in events:
                    if isinstance(event, DoneEvent):
                        latency_s = perf_counter() - started
                        self._write_audit(
                            admitted,
                            query=message,
                            conversation_id=event.conversation_id,
                            function_calls=event.function_calls,
                            tokens_used=event.tokens_used,
                            latency_s=latency_s,
                            meta=meta,
                        )
                        self._budget_tracker.track_token_usage(admitted.organization)
                        outcome = "ok"
                    elif isinstance(event, ErrorEvent):
                        outcome = "upstream_error"
                    yield self._sse_event(event.as_dict())
            finally:
                await events.aclose()
                self._concurrency.release(actor_id)
                record_turn(
                    outcome,
                    self._settings.default_model,
                    perf_counter() - started,
                    streaming=True,
                )

        return event_stream()

    def _acquire_slot(self, actor_id: str, meta: RequestMeta) -> None:
        if self._concurrency.acquire(actor_id):
            return
        result = self._rate_limiter.concurrency_denied(
            self._concurrency.active(actor_id), self._concurrency.max_concurrent
        )
        record_rate_limit_denial(result.reason or "concurrent_limit")
        logger.info(
            "concurrency limit reached",
            extra={"request_id": meta.request_id, "actor_id": actor_id, "reason": result.reason},
        )
        raise RateLimitedError(result, format_rate_limit_error(result))

    def _admit(self, org_id: str, actor_id: str, message: str, meta: RequestMeta) -> _Admitted:
        organization, member = self.resolve_actor(org_id, actor_id)
        if not self._settings.chat_enabled or not organization.ai_chat_enabled:
            raise PermissionDeniedError(CHAT_DISABLED_MESSAGE, code="ai_chat_disabled")

        limit = self._rate_limiter.check_ai_rate_limit(actor_id, organization)
        if not limit.allowed:
            record_rate_limit_denial(limit.reason or "rate_limited")
            raise RateLimitedError(limit, format_rate_limit_error(limit))

        if not message.strip():
            raise ValidationError("Message must not be empty", code="empty_message", status_code=400)
        if len(message) > self._settings.max_input_length:
            raise ValidationError(
                f"Message must be at most {self._settings.max_input_length} characters",
                code="message_too_long",
                status_code=400,
            )

        block = self._sanitizer.should_block_input(message)
        if block.blocked:
            record_blocked_input(block.reason or "blocked")
            logger.warning(
                "blocked chat message",
                extra={"request_id": meta.request_id, "actor_id": actor_id, "reason": block.reason},
            )
            raise InputBlockedError()

        sanitization = self._sanitizer.sanitize(message)
        if sanitization.flagged:
            record_flagged_input()
            logger.warning(
                "flagged chat message",
                extra={
                    "request_id": meta.request_id,
                    "actor_id": actor_id,
                    "flag_reasons": sanitization.flags,
                },
            )
        return _Admitted(
            organization=organization,
            context=self.context_for(organization, member),
            sanitization=sanitization,
        )

    def _write_audit(
        self,
        admitted: _Admitted,
        *,
        query: str,
        conversation_id: str,
        function_calls: list[dict[str, Any]],
        tokens_used: int,
        latency_s: float,
        meta: RequestMeta,
    ) -> None:
        try:
            entry = create_audit_entry(
                org_id=admitted.context.org_id,
                actor_id=admitted.context.actor_id,
                query=query,
                conversation_id=conversation_id,
                function_calls=function_calls,
                tokens_used=tokens_used,
                response_time_ms=int(latency_s * 1000),
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            self._audit_logger.log_audit_entry(entry, admitted.sanitization)
        except Exception:
            logger.exception(
                "audit write failed",
                extra={"request_id": meta.request_id, "org_id": admitted.context.org_id},
            )

    # -- Conversations ------------------------------------------------------

    def _read_context(self, org_id: str, actor_id: str) -> ChatContext:
        organization, member = self.resolve_actor(org_id, actor_id)
        limit = self._rate_limiter.check_read_rate_limit(actor_id)
        if not limit.allowed:
            record_rate_limit_denial(limit.reason or "rate_limited")
            raise RateLimitedError(limit, format_rate_limit_error(limit))
        return self.context_for(organization, member)

    def list_conversations(self, org_id: str, actor_id: str) -> list[Conversation]:
        return self._orchestrator.get_conversations(self._read_context(org_id, actor_id))

    def get_conversation(
        self,
        org_id: str,
        actor_id: str,
        conversation_id: str,
        cursor: str | None = None,
        limit: int = 50,
    ) -> ConversationPage:
        context = self._read_context(org_id, actor_id)
        page = self._orchestrator.get_conversation_messages(
            conversation_id, context, cursor=cursor, limit=limit
        )
        if page is None:
            raise NotFoundError("Conversation not found", code="conversation_not_found")
        return page

    def delete_conversation(self, org_id: str, actor_id: str, conversation_id: str) -> None:
        organization, member = self.resolve_actor(org_id, actor_id)
        if not self._orchestrator.delete_conversation(
            conversation_id, self.context_for(organization, member)
        ):
            raise NotFoundError("Conversation not found", code="conversation_not_found")

    # -- Administration -----------------------------------------------------

    def _require_admin(self, org_id: str, actor_id: str) -> Organization:
        organization, member = self.resolve_actor(org_id, actor_id)
        if not member.is_admin:
            raise PermissionDeniedError("Administrator access required", code="admin_required")
        return organization

    def budget_status(self, org_id: str, actor_id: str) -> BudgetStatus:
        return self._budget_tracker.get_budget_status(self._require_admin(org_id, actor_id))

    def reset_budget_alerts(self, org_id: str, actor_id: str) -> int:
        organization = self._require_admin(org_id, actor_id)
        return self._budget_tracker.reset_monthly_alerts(organization.id)

    def audit_summary(
        self,
        org_id: str,
        actor_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        organization = self._require_admin(org_id, actor_id)
        now = self._now()
        range_start = start or start_of_month(now)
        range_end = end or now
        if range_start > range_end:
            raise ValidationError("start must not be after end", code="invalid_range", status_code=400)
        summary = self._audit_logger.get_audit_summary(organization.id, range_start, range_end)
        return {
            "start": range_start.isoformat(),
            "end": range_end.isoformat(),
            **summary.as_dict(),
        }

    def flagged_queries(self, org_id: str, actor_id: str, limit: int = 50) -> list[AuditEntry]:
        organization = self._require_admin(org_id, actor_id)
        return self._audit_logger.get_flagged_queries(organization.id, max(1, min(limit, 200)))

    def cleanup_audit_logs(self, org_id: str, actor_id: str, retention_days: int | None) -> int:
        organization = self._require_admin(org_id, actor_id)
        days = retention_days if retention_days is not None else self._settings.audit_retention_days
        if days < 1:
            raise ValidationError(
                "retention_days must be at least 1", code="invalid_retention", status_code=400
            )
        return self._audit_logger.cleanup_old_audit_logs(days, org_id=organization.id)

    def usage_report(self, org_id: str, actor_id: str, days: int = 30) -> dict[str, Any]:
        organization = self._require_admin(org_id, actor_id)
        return build_usage_report(
            store=self._store,
            organization=organization,
            rate_limiter=self._rate_limiter,
            budget_tracker=self._budget_tracker,
            audit_logger=self._audit_logger,
            days=max(1, min(days, 90)),
            now=self._now(),
        )

    @staticmethod
    def _sse_event(payload: dict[str, Any]) -> str:
        return f"data: {json.dumps(payload, separators=(',', ':'), default=str)}\n\n"
