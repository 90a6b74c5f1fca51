import asyncio
import json

import httpx
import pytest

from assistant.providers.base import (
    ProviderError,
    RetryPolicy,
    ToolCall,
    Usage,
    call_with_retries,
    chunk_delta,
    parse_completion,
)
from assistant.providers.http_openai import HTTPOpenAIProvider
from assistant.providers.stub import StubProvider


def test_parse_completion_reads_tool_calls_and_usage() -> None:
    payload = {
        "model": "gpt-4o-mini-2024",
        "choices": [
            {
                "message": {
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "listAssets", "arguments": '{"type": "Laptop"}'},
                        }
                    ],
                }
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 4, "total_tokens": 14},
    }
    completion = parse_completion(payload, "gpt-4o-mini")
    assert completion.content == ""
    assert completion.model == "gpt-4o-mini-2024"
    assert completion.usage == Usage(10, 4, 14)
    assert completion.tool_calls[0].parsed_arguments() == {"type": "Laptop"}


def test_tool_call_arguments_must_be_an_object() -> None:
    with pytest.raises(ValueError):
        ToolCall(id="1", name="listAssets", arguments="[1, 2]").parsed_arguments()
    with pytest.raises(ValueError):
        ToolCall(id="1", name="listAssets", arguments="{not json").parsed_arguments()
    assert ToolCall(id="1", name="listAssets", arguments=" ").parsed_arguments() == {}


def test_usage_total_falls_back_to_sum() -> None:
    assert Usage.from_payload({"prompt_tokens": 3, "completion_tokens": 2}).total_tokens == 5
    assert Usage.from_payload(None) == Usage()


def test_chunk_delta() -> None:
    assert chunk_delta({"choices": [{"delta": {"content": "hi"}}]}) == "hi"
    assert chunk_delta({"choices": []}) == ""


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(max_retries=5, backoff_base_s=0.5, backoff_max_s=1.5)
    assert [policy.delay(attempt) for attempt in range(4)] == [0.5, 1.0, 1.5, 1.5]


def test_call_with_retries_recovers_from_transient_errors() -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    async def operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ProviderError(502, "provider_upstream_error", "bad gateway")
        return "ok"

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    result = asyncio.run(call_with_retries(operation, RetryPolicy(max_retries=2), fake_sleep))
    assert result == "ok"
    assert len(attempts) == 3
    assert sleeps == [0.25, 0.5]


def test_call_with_retries_is_bounded() -> None:
    attempts: list[int] = []

    async def operation() -> str:
        attempts.append(1)
        raise ProviderError(503, "provider_timeout", "timeout")

    async def fake_sleep(delay: float) -> None:
        return None

    with pytest.raises(ProviderError):
        asyncio.run(call_with_retries(operation, RetryPolicy(max_retries=1), fake_sleep))
    assert len(attempts) == 2


def test_call_with_retries_does_not_retry_client_errors() -> None:
    attempts: list[int] = []

    async def operation() -> str:
        attempts.append(1)
        raise ProviderError(400, "provider_error", "bad request")

    with pytest.raises(ProviderError):
        asyncio.run(call_with_retries(operation, RetryPolicy(max_retries=3)))
    assert len(attempts) == 1


def test_http_provider_posts_tools() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": "hi"}}], "usage": {"total_tokens": 3}},
        )

    provider = HTTPOpenAIProvider(
        base_url="https://llm.example.com/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )
    tools = [{"type": "function", "function": {"name": "getEmployeeCount"}}]
    payload = asyncio.run(
        provider.chat("gpt-4o-mini", [{"role": "user", "content": "hi"}], tools=tools)
    )

    assert payload["choices"][0]["message"]["content"] == "hi"
    assert seen["url"] == "https://llm.example.com/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    body = seen["body"]
    assert isinstance(body, dict)
    assert body["tools"] == tools
    assert body["tool_choice"] == "auto"


def test_http_provider_streams_sse_lines() -> None:
    frames = [
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
        {"choices": [], "usage": {"prompt_tokens": 2, "completion_tokens": 2, "total_tokens": 4}},
    ]
    body = "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream_options"] == {"include_usage": True}
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    provider = HTTPOpenAIProvider(
        base_url="https://llm.example.com", api_key="secret", transport=httpx.MockTransport(handler)
    )
    chunks = asyncio.run(_collect(provider.chat_stream("gpt-4o-mini", [])))

    assert "".join(chunk_delta(chunk) for chunk in chunks) == "Hello"
    assert chunks[-1]["usage"]["total_tokens"] == 4


def test_http_provider_rejects_non_json_body() -> None:
    provider = HTTPOpenAIProvider(
        base_url="https://llm.example.com",
        api_key="secret",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")),
    )
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.chat("gpt-4o-mini", []))
    assert exc_info.value.code == "provider_invalid_response"


def test_raise_for_status_rate_limit() -> None:
    with pytest.raises(ProviderError, match="rate limit") as exc_info:
        HTTPOpenAIProvider._raise_for_status(httpx.Response(status_code=429))
    assert exc_info.value.retryable is True


def test_raise_for_status_generic_error() -> None:
    with pytest.raises(ProviderError, match="Provider returned 400") as exc_info:
        HTTPOpenAIProvider._raise_for_status(httpx.Response(status_code=400))
    assert exc_info.value.retryable is False


def test_stub_requests_named_tools() -> None:
    tools = [{"type": "function", "function": {"name": "getEmployeeCount"}}]
    payload = asyncio.run(
        StubProvider().chat(
            "gpt-4o-mini", [{"role": "user", "content": "call getEmployeeCount"}], tools=tools
        )
    )
    message = payload["choices"][0]["message"]
    assert message["tool_calls"][0]["function"]["name"] == "getEmployeeCount"
    assert payload["choices"][0]["finish_reason"] == "tool_calls"


def test_stub_stream_ends_with_usage() -> None:
    chunks = asyncio.run(
        _collect(StubProvider(chunk_size=4).chat_stream("gpt-4o-mini", [
            {"role": "user", "content": "hello there"},
        ]))
    )
    assert "".join(chunk_delta(chunk) for chunk in chunks) == "Stub response: hello there"
    assert chunks[-1]["usage"]["total_tokens"] > 0


def test_stub_error_models() -> None:
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(StubProvider().chat("error-429-test", []))
    assert exc_info.value.status_code == 429


async def _collect(stream):  # type: ignore[no-untyped-def]
    return [chunk async for chunk in stream]


def _dropped_connection(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadError("connection reset", request=request)


def test_http_provider_wraps_transport_errors() -> None:
    provider = HTTPOpenAIProvider(
        base_url="https://llm.example.com",
        api_key="secret",
        transport=httpx.MockTransport(_dropped_connection),
    )
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.chat("gpt-4o-mini", []))
    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "provider_transport_error"
    assert exc_info.value.retryable is True


def test_http_provider_stream_wraps_transport_errors() -> None:
    provider = HTTPOpenAIProvider(
        base_url="https://llm.example.com",
        api_key="secret",
        transport=httpx.MockTransport(_dropped_connection),
    )
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(_collect(provider.chat_stream("gpt-4o-mini", [])))
    assert exc_info.value.code == "provider_transport_error"
