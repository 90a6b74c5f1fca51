"""HTTP provider for OpenAI-compatible chat completion endpoints."""

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from assistant.providers.base import ProviderError


class HTTPOpenAIProvider:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            body["tools"] = tools
            body["tool_choice"] = tool_choice or "auto"
        return await self._post("/v1/chat/completions", body)

    def chat_stream(
        self, model: str, messages: list[dict[str, Any]]
    ) -> AsyncIterator[dict[str, Any]]:
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        return self._stream_post("/v1/chat/completions", body)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _stream_post(
        self, path: str, body: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        url = f"{self._base_url}{path}"
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line.removeprefix("data:").strip()
                        if data == "[DONE]":
                            break
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(parsed, dict):
                            yield parsed
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=503,
                code="provider_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_transport_error",
                message=f"Provider connection failed: {exc}",
            ) from exc

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=503,
                code="provider_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_transport_error",
                message=f"Provider connection failed: {exc}",
            ) from exc

        self._raise_for_status(resp)
        try:
            result = resp.json()
        except ValueError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_invalid_response",
                message="Provider returned a non-JSON body",
            ) from exc
        if not isinstance(result, dict):
            raise ProviderError(
                status_code=502,
                code="provider_invalid_response",
                message="Provider returned an unexpected payload",
            )
        return result

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if resp.status_code in {502, 503}:
            raise ProviderError(
                status_code=resp.status_code,
                code="provider_upstream_error",
                message=f"Provider returned {resp.status_code}",
            )
        if resp.status_code >= 400:
            raise ProviderError(
                status_code=resp.status_code,
                code="provider_error",
                message=f"Provider returned {resp.status_code}",
            )
