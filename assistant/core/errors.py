from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from assistant.middleware.request_id import REQUEST_ID_HEADER, resolve_request_id


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    type: str
    request_id: str
    details: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "request_id": self.request_id,
        }
        if self.details:
            error.update(self.details)
        return {"error": error}


class AppError(Exception):
    def __init__(self, status_code: int, code: str, error_type: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error_type = error_type
        self.message = message

    def details(self) -> dict[str, Any] | None:
        return None

    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(AppError):
    def __init__(self, message: str, code: str = "request_validation_failed", status_code: int = 422):
        super().__init__(status_code, code, "validation", message)


class PermissionDeniedError(AppError):
    def __init__(self, message: str, code: str = "permission_denied"):
        super().__init__(403, code, "permission", message)


class InputBlockedError(AppError):
    """Raised when the sanitizer hard-blocks an input.

    The message never names the matched pattern.
    """

    def __init__(self) -> None:
        super().__init__(
            400,
            "input_blocked",
            "validation",
            "Your message could not be processed. Please rephrase and try again.",
        )


class NotFoundError(AppError):
    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(404, code, "not_found", message)


class UpstreamError(AppError):
    def __init__(self, status_code: int, code: str, message: str, error_type: str = "provider"):
        super().__init__(status_code, code, error_type, message)


class InternalError(AppError):
    def __init__(self, message: str = "Internal server error", code: str = "internal_error"):
        super().__init__(500, code, "internal", message)


class RateLimitedError(AppError):
    def __init__(self, result: Any, message: str):
        super().__init__(429, result.reason or "rate_limited", "rate_limit", message)
        self.result = result

    def details(self) -> dict[str, Any] | None:
        return {"rate_limit": self.result.as_dict()}

    def headers(self) -> dict[str, str]:
        if self.result.retry_after_seconds:
            return {"Retry-After": str(self.result.retry_after_seconds)}
        return {}


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    return state_id or resolve_request_id(request.headers.get(REQUEST_ID_HEADER))


def app_error_response(
    status_code: int,
    code: str,
    error_type: str,
    message: str,
    request_id: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=code, message=message, type=error_type, request_id=request_id, details=details
    )
    response = JSONResponse(status_code=status_code, content=envelope.as_dict())
    response.headers["x-request-id"] = request_id
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response
