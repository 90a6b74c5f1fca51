from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from assistant.config.settings import get_settings
from assistant.core.errors import app_error_response, request_id_from_request

ORG_HEADER = "x-aia-org-id"
USER_HEADER = "x-aia-user-id"
REQUIRED_HEADERS = (ORG_HEADER, USER_HEADER)
BYPASS_PATHS = {"/healthz", "/openapi.json", "/docs", "/docs/oauth2-redirect"}


class AuthMiddleware(BaseHTTPMiddleware):
    """Bearer API key plus the acting organization and member headers."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in BYPASS_PATHS:
            return await call_next(request)

        request_id = request_id_from_request(request)
        settings = get_settings()

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return app_error_response(
                401, "auth_missing", "auth", "Missing bearer token", request_id
            )

        token = auth_header.removeprefix("Bearer ").strip()
        if token not in settings.api_key_set:
            return app_error_response(401, "auth_invalid", "auth", "Invalid API key", request_id)

        if request.url.path == "/metrics":
            return await call_next(request)

        missing_headers = [header for header in REQUIRED_HEADERS if not request.headers.get(header)]
        if missing_headers:
            return app_error_response(
                422,
                "missing_required_headers",
                "validation",
                f"Missing required headers: {', '.join(missing_headers)}",
                request_id,
            )

        request.state.org_id = request.headers[ORG_HEADER]
        request.state.actor_id = request.headers[USER_HEADER]
        return await call_next(request)
