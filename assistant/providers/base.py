import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

logger = logging.getLogger("aia.providers")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

T = TypeVar("T")


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        error_type: str = "provider",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_type = error_type

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


class ChatProvider(Protocol):
    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> dict[str, Any]:
        """Return an OpenAI-style chat completion payload."""

    def chat_stream(
        self, model: str, messages: list[dict[str, Any]]
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield OpenAI-style ``chat.completion.chunk`` payloads."""


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, raw: Any) -> "Usage":
        if not isinstance(raw, dict):
            return cls()
        prompt = int(raw.get("prompt_tokens") or 0)
        completion = int(raw.get("completion_tokens") or 0)
        total = int(raw.get("total_tokens") or prompt + completion)
        return cls(prompt, completion, total)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str

    def parsed_arguments(self) -> dict[str, Any]:
        if not self.arguments.strip():
            return {}
        parsed = json.loads(self.arguments)
        if not isinstance(parsed, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return parsed

    def as_message_part(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Completion:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    model: str = ""


def parse_completion(payload: dict[str, Any], model: str) -> Completion:
    content = ""
    tool_calls: list[ToolCall] = []
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            if isinstance(message.get("content"), str):
                content = message["content"]
            for raw in message.get("tool_calls") or []:
                function = raw.get("function") if isinstance(raw, dict) else None
                if not isinstance(function, dict):
                    continue
                tool_calls.append(
                    ToolCall(
                        id=str(raw.get("id", "")),
                        name=str(function.get("name", "")),
                        arguments=str(function.get("arguments") or ""),
                    )
                )
    return Completion(
        content=content,
        tool_calls=tool_calls,
        usage=Usage.from_payload(payload.get("usage")),
        model=str(payload.get("model") or model),
    )


def chunk_delta(chunk: dict[str, Any]) -> str:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return str(delta["content"])
    return ""


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_base_s: float = 0.25
    backoff_max_s: float = 2.0

    def delay(self, attempt: int) -> float:
        base = max(self.backoff_base_s, 0.0)
        return min(base * (2**attempt), max(self.backoff_max_s, base))


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run one provider call, retrying transient ``ProviderError``s."""
    for attempt in range(1 + policy.max_retries):
        try:
            return await operation()
        except ProviderError as exc:
            if not exc.retryable or attempt >= policy.max_retries:
                raise
            logger.warning(
                "provider call failed, retrying",
                extra={"attempt": attempt + 1, "status_code": exc.status_code},
            )
            await sleep(policy.delay(attempt))
    raise AssertionError("unreachable")  # pragma: no cover
