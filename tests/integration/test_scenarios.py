"""End-to-end provider scenarios against a scripted HTTP transport.

Each test drives a real provider built by ``create_provider`` and checks what
went over the wire as well as what came back.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
import json

import httpx
import pytest

from llmrelay import (
    GenerateOptions,
    Message,
    OAuthCredential,
    ProviderConfig,
    RateLimitError,
    Tool,
    ToolCall,
    ToolCallFunction,
    collect_stream,
    create_provider,
)
from llmrelay._http import utcnow
from llmrelay.auth.refresh import ANTHROPIC_TOKEN_URL
from llmrelay.ratelimit import RateLimitTracker
from llmrelay.translation import openai as openai_wire
from tests.helpers import (
    RecordingServer,
    anthropic_message,
    gemini_response,
    json_response,
    openai_completion,
    sse_response,
)

pytestmark = pytest.mark.integration


# =============================================================================
# Key pools
# =============================================================================


@pytest.mark.asyncio
async def test_openai_non_streaming_success() -> None:
    server = RecordingServer(lambda _r: json_response(openai_completion("Hello")))
    provider = create_provider(
        ProviderConfig(type="openai", api_key="k1", api_keys=["k2"]),
        client=server.client(),
    )

    stream = await provider.generate_chat_completion(
        GenerateOptions(prompt="Hi", model="gpt-4o")
    )
    completion = await collect_stream(stream)

    assert completion.content == "Hello"
    assert completion.usage.total_tokens == 9
    pool = provider.runtime.auth.key_pool
    assert pool.record("k1").success_count == 1
    assert pool.record("k2").success_count == 0
    assert len(server.requests) == 1

    metrics = provider.get_metrics()
    assert (metrics.request_count, metrics.success_count) == (1, 1)
    assert metrics.tokens_used == 9


@pytest.mark.asyncio
async def test_failover_on_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["authorization"] == "Bearer badKey":
            return json_response(
                {
                    "error": {
                        "message": "Incorrect API key provided: badKey.",
                        "type": "invalid_request_error",
                        "param": None,
                        "code": "invalid_api_key",
                    }
                },
                status_code=401,
            )
        return json_response(openai_completion("ok"))

    server = RecordingServer(handler)
    provider = create_provider(
        ProviderConfig(type="openai", api_keys=["badKey", "goodKey"]),
        client=server.client(),
    )

    completion = await collect_stream(
        await provider.generate_chat_completion(GenerateOptions(prompt="Hi"))
    )

    assert completion.content == "ok"
    assert len(server.requests) == 2
    pool = provider.runtime.auth.key_pool
    bad = pool.record("badKey")
    assert (bad.healthy, bad.quarantined) == (False, True)
    assert pool.record("goodKey").success_count == 1

    # The quarantined key is skipped on the next call.
    await provider.generate_chat_completion(GenerateOptions(prompt="again"))
    assert [r.headers["authorization"] for r in server.requests[2:]] == [
        "Bearer goodKey"
    ]


# =============================================================================
# OAuth
# =============================================================================


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_oauth_refresh() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == ANTHROPIC_TOKEN_URL:
            await asyncio.sleep(0.05)
            return json_response(
                {
                    "access_token": "new-token",
                    "refresh_token": "rt-2",
                    "expires_in": 3600,
                }
            )
        if request.headers.get("authorization") != "Bearer new-token":
            return json_response({"error": {"message": "stale"}}, status_code=401)
        return json_response(anthropic_message("Hi"))

    server = RecordingServer(handler)
    credential = OAuthCredential(
        id="claude-main",
        access_token="old-token",
        refresh_token="rt-1",
        expires_at=utcnow() - timedelta(seconds=10),
    )
    refreshed: list[OAuthCredential] = []
    provider = create_provider(
        ProviderConfig(type="anthropic", oauth_credentials=[credential]),
        client=server.client(),
        on_token_refresh=refreshed.append,
    )

    streams = await asyncio.gather(
        *(
            provider.generate_chat_completion(GenerateOptions(prompt=f"q{i}"))
            for i in range(5)
        )
    )
    completions = [await collect_stream(s) for s in streams]

    assert [c.content for c in completions] == ["Hi"] * 5
    token_posts = [r for r in server.requests if str(r.url) == ANTHROPIC_TOKEN_URL]
    assert len(token_posts) == 1
    assert json.loads(token_posts[0].content)["refresh_token"] == "rt-1"
    messages = [r for r in server.requests if r.url.path == "/v1/messages"]
    assert len(messages) == 5
    assert {r.headers["authorization"] for r in messages} == {"Bearer new-token"}
    assert all("anthropic-beta" in r.headers for r in messages)

    current = provider.runtime.auth.oauth.get("claude-main")
    assert current.refresh_count == 1
    assert current.refresh_token == "rt-2"
    assert [c.access_token for c in refreshed] == ["new-token"]


# =============================================================================
# Streaming
# =============================================================================

OPENAI_SSE = (
    'data: {"id":"c1","model":"gpt-4","choices":[{"delta":{"content":"Hello"},'
    '"finish_reason":null}]}\n\n'
    'data: {"id":"c1","model":"gpt-4","choices":[{"delta":{"content":" world"},'
    '"finish_reason":null}]}\n\n'
    'data: {"id":"c1","model":"gpt-4","choices":[{"delta":{},'
    '"finish_reason":"stop"}]}\n\n'
    "data: [DONE]\n\n"
)


@pytest.mark.asyncio
async def test_openai_sse_streaming() -> None:
    server = RecordingServer(lambda _r: sse_response(OPENAI_SSE))
    provider = create_provider(
        ProviderConfig(type="openai", api_key="k1"), client=server.client()
    )

    stream = await provider.generate_chat_completion(
        GenerateOptions(prompt="Hi", model="gpt-4", stream=True)
    )
    first, second, third = [await stream.next() for _ in range(3)]

    assert (first.content, first.done) == ("Hello", False)
    assert (second.content, second.done) == (" world", False)
    assert (third.content, third.done) == ("", True)
    assert third.finish_reason == "stop"
    with pytest.raises(StopAsyncIteration):
        await stream.next()
    await stream.close()

    body = json.loads(server.requests[0].content)
    assert body["stream"] is True
    assert server.requests[0].headers["accept"] == "text/event-stream"


# =============================================================================
# Rate limits
# =============================================================================


@pytest.mark.asyncio
async def test_gemini_429_gates_the_next_call() -> None:
    responses = iter(
        [
            json_response(
                {"error": {"code": 429, "status": "RESOURCE_EXHAUSTED"}},
                status_code=429,
                headers={"Retry-After": "3"},
            ),
            json_response(gemini_response("later")),
        ]
    )
    server = RecordingServer(lambda _r: next(responses))
    provider = create_provider(
        ProviderConfig(type="gemini", api_key="g-key"), client=server.client()
    )
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    provider.runtime.tracker = RateLimitTracker(sleep=fake_sleep)

    with pytest.raises(RateLimitError) as excinfo:
        await provider.generate_chat_completion(GenerateOptions(prompt="Hi"))
    assert excinfo.value.retry_after_s == 3.0

    tracker = provider.runtime.tracker
    assert tracker.wait_time("gemini-2.5-flash") == pytest.approx(3.0, abs=0.05)
    assert tracker.can_make_request("gemini-2.5-flash") is False

    completion = await collect_stream(
        await provider.generate_chat_completion(GenerateOptions(prompt="Hi"))
    )
    assert completion.content == "later"
    (slept,) = sleeps
    assert slept == pytest.approx(3.0, abs=0.05)
    assert provider.get_metrics().error_count == 1


# =============================================================================
# Tool calls
# =============================================================================


def test_tool_call_round_trip_through_openai_wire() -> None:
    call = ToolCall(
        id="x",
        function=ToolCallFunction("get_weather", '{"city":"Tokyo"}'),
    )
    back = openai_wire.tool_call_from_openai(openai_wire.tool_call_to_openai(call))
    assert back.function.name == "get_weather"
    assert json.loads(back.function.arguments) == {"city": "Tokyo"}


@pytest.mark.asyncio
async def test_tool_call_conversation_over_openai() -> None:
    tool_call = {
        "id": "x",
        "type": "function",
        "function": {"name": "get_weather", "arguments": '{"city":"Tokyo"}'},
    }
    responses = iter(
        [
            json_response(
                openai_completion(
                    "", tool_calls=[tool_call], finish_reason="tool_calls"
                )
            ),
            json_response(openai_completion("Sunny in Tokyo")),
        ]
    )
    server = RecordingServer(lambda _r: next(responses))
    provider = create_provider(
        ProviderConfig(type="openai", api_key="k1"), client=server.client()
    )
    tools = [Tool(name="get_weather", description="Current weather")]
    user = Message(role="user", content="Weather in Tokyo?")

    first = await collect_stream(
        await provider.generate_chat_completion(
            GenerateOptions(messages=[user], tools=tools)
        )
    )
    assert first.finish_reason == "tool_calls"
    (call,) = first.message.tool_calls
    assert call.parsed_arguments() == {"city": "Tokyo"}

    final = await collect_stream(
        await provider.generate_chat_completion(
            GenerateOptions(
                messages=[
                    user,
                    first.message,
                    Message(role="tool", content="Sunny", tool_call_id=call.id),
                ],
                tools=tools,
            )
        )
    )
    assert final.content == "Sunny in Tokyo"

    first_body, second_body = server.bodies()
    assert first_body["tools"][0]["function"]["name"] == "get_weather"
    assert first_body["tool_choice"] == "auto"
    assistant, tool_reply = second_body["messages"][1:]
    assert assistant["tool_calls"][0]["id"] == "x"
    assert tool_reply == {"role": "tool", "tool_call_id": "x", "content": "Sunny"}
