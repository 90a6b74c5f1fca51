from collections.abc import AsyncIterator
from time import time
from typing import Any
from uuid import uuid4

from assistant.providers.base import ProviderError


class StubProvider:
    """Offline provider for local runs.

    Requests a tool call when the latest user message names an offered
    tool; otherwise echoes the conversation back.
    """

    def __init__(self, chunk_size: int = 32):
        self._chunk_size = chunk_size

    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> dict[str, Any]:
        self._maybe_raise_provider_error(model)
        message: dict[str, Any] = {"role": "assistant", "content": None}
        finish_reason = "stop"

        requested = self._requested_tools(messages, tools) if tool_choice != "none" else []
        if requested:
            message["tool_calls"] = [
                {
                    "id": f"call_{uuid4().hex[:12]}",
                    "type": "function",
                    "function": {"name": name, "arguments": "{}"},
                }
                for name in requested
            ]
            finish_reason = "tool_calls"
        else:
            message["content"] = self._answer(messages)

        prompt_tokens = max(sum(len(str(m.get("content") or "").split()) for m in messages), 1)
        completion_tokens = max(len(str(message.get("content") or "").split()), 1)
        return {
            "id": f"chatcmpl-{uuid4().hex}",
            "object": "chat.completion",
            "created": int(time()),
            "model": model,
            "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }

    async def chat_stream(
        self, model: str, messages: list[dict[str, Any]]
    ) -> AsyncIterator[dict[str, Any]]:
        response = await self.chat(model=model, messages=messages, tool_choice="none")
        content = str(response["choices"][0]["message"].get("content") or "")
        response_id = str(response["id"])
        created = int(response["created"])

        pieces = [
            content[idx : idx + self._chunk_size]
            for idx in range(0, len(content), self._chunk_size)
        ] or [""]
        for index, piece in enumerate(pieces):
            delta: dict[str, Any] = {"content": piece}
            if index == 0:
                delta["role"] = "assistant"
            yield {
                "id": response_id,
                "object": "chat.completion.chunk",
                "created": created,
                "model": model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
            }

        yield {
            "id": response_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
            "usage": response.get("usage", {}),
        }

    @staticmethod
    def _requested_tools(
        messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None
    ) -> list[str]:
        if not tools or not messages or messages[-1].get("role") != "user":
            return []
        text = str(messages[-1].get("content") or "")
        names = [str(tool.get("function", {}).get("name", "")) for tool in tools]
        return [name for name in names if name and name in text]

    @staticmethod
    def _answer(messages: list[dict[str, Any]]) -> str:
        tool_results = [m for m in messages if m.get("role") == "tool"]
        if tool_results and messages[-1].get("role") == "tool":
            rendered = "; ".join(str(m.get("content") or "") for m in tool_results)
            return f"Stub response based on tool results: {rendered[:240]}"
        last_user_message = next(
            (str(m.get("content") or "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        return f"Stub response: {last_user_message[:120]}"

    @staticmethod
    def _maybe_raise_provider_error(model: str) -> None:
        if model.startswith("error-429"):
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if model.startswith("error-502"):
            raise ProviderError(
                status_code=502,
                code="provider_bad_gateway",
                message="Provider upstream bad gateway",
            )
