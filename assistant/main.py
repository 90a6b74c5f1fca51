from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from assistant.api.routes import router
from assistant.audit.logger import AuditLogger
from assistant.budget.tracker import BudgetTracker
from assistant.config.settings import Settings, get_settings
from assistant.core.errors import (
    AppError,
    InternalError,
    app_error_response,
    request_id_from_request,
)
from assistant.core.logging import configure_logging
from assistant.limits.concurrency import ConcurrencyLimiter, RedisConcurrencyLimiter, SlotLimiter
from assistant.limits.rate_limiter import LimitOverrides, RateLimiter
from assistant.metrics import metrics_router
from assistant.middleware.auth import AuthMiddleware
from assistant.middleware.request_id import RequestIDMiddleware
from assistant.providers.base import ChatProvider, RetryPolicy
from assistant.providers.http_openai import HTTPOpenAIProvider
from assistant.providers.stub import StubProvider
from assistant.security.permissions import PermissionFilter
from assistant.security.sanitizer import InputSanitizer, load_pattern_table
from assistant.services.chat_service import ChatService
from assistant.services.orchestrator import ChatOrchestrator
from assistant.storage.base import Store
from assistant.storage.sqlite import SQLiteStore
from assistant.tools.registry import FunctionRegistry


def _build_provider(settings: Settings) -> ChatProvider:
    name = settings.provider_name_normalized
    if name == "stub":
        return StubProvider()
    if name == "openai":
        if not settings.openai_api_key:
            raise RuntimeError("AIA_OPENAI_API_KEY is required when provider_name=openai")
        return HTTPOpenAIProvider(
            base_url=settings.openai_base_url,
            api_key=settings.openai_api_key,
            timeout_s=settings.provider_timeout_s,
        )
    raise RuntimeError(f"Unsupported AIA_PROVIDER_NAME value: {name}")


def _build_concurrency(settings: Settings) -> SlotLimiter:
    backend = settings.concurrency_backend_normalized
    if backend == "memory":
        return ConcurrencyLimiter(max_concurrent=settings.max_concurrent_requests)
    if backend == "redis":
        if not settings.redis_url:
            raise RuntimeError("AIA_REDIS_URL is required when concurrency_backend=redis")
        return RedisConcurrencyLimiter(
            redis_url=settings.redis_url,
            max_concurrent=settings.max_concurrent_requests,
            key_prefix=settings.redis_prefix,
            ttl_seconds=settings.redis_slot_ttl_seconds,
        )
    raise RuntimeError(f"Unsupported AIA_CONCURRENCY_BACKEND value: {backend}")


def build_sanitizer(settings: Settings) -> InputSanitizer:
    if not settings.injection_patterns_path:
        return InputSanitizer(max_length=settings.max_input_length)
    loaded = load_pattern_table(settings.injection_patterns_path)
    mode = settings.injection_patterns_mode_normalized
    if mode == "extend":
        return InputSanitizer(extra_patterns=loaded, max_length=settings.max_input_length)
    if mode == "replace":
        return InputSanitizer(patterns=loaded, max_length=settings.max_input_length)
    raise RuntimeError(f"Unsupported AIA_INJECTION_PATTERNS_MODE value: {mode}")


def build_chat_service(
    settings: Settings,
    store: Store,
    provider: ChatProvider,
    registry: FunctionRegistry,
) -> ChatService:
    rate_limiter = RateLimiter(
        store,
        overrides=LimitOverrides.from_settings(settings),
        read_requests_per_hour=settings.read_requests_per_hour,
    )
    orchestrator = ChatOrchestrator(
        store=store,
        provider=provider,
        permissions=PermissionFilter(registry.catalog),
        registry=registry,
        model=settings.default_model,
        history_limit=settings.history_limit,
        default_retention_days=settings.default_retention_days,
        retry_policy=RetryPolicy(
            max_retries=settings.provider_max_retries,
            backoff_base_s=settings.provider_backoff_base_s,
            backoff_max_s=settings.provider_backoff_max_s,
        ),
    )
    return ChatService(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        sanitizer=build_sanitizer(settings),
        rate_limiter=rate_limiter,
        concurrency=_build_concurrency(settings),
        audit_logger=AuditLogger(store),
        budget_tracker=BudgetTracker(store, rate_limiter),
    )


def create_app(
    store: Store | None = None,
    provider: ChatProvider | None = None,
    registry: FunctionRegistry | None = None,
) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Operations Assistant Gateway", version="0.1.0")

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(AuthMiddleware)

    store = store if store is not None else SQLiteStore(settings.database_path)
    registry = registry if registry is not None else FunctionRegistry()
    chat_service = build_chat_service(
        settings=settings,
        store=store,
        provider=provider if provider is not None else _build_provider(settings),
        registry=registry,
    )
    app.state.store = store
    app.state.registry = registry
    app.state.chat_service = chat_service

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            exc.status_code,
            exc.code,
            exc.error_type,
            exc.message,
            request_id,
            details=exc.details(),
            headers=exc.headers(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            422, "request_validation_failed", "validation", str(exc), request_id
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        error = InternalError()
        return app_error_response(
            error.status_code,
            error.code,
            error.error_type,
            error.message,
            request_id_from_request(request),
        )

    app.include_router(router)
    if settings.metrics_enabled:
        app.include_router(metrics_router)
    return app
