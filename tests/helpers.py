"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: every provider test talks to a
``RecordingServer`` through ``httpx.MockTransport`` instead of the network.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


@dataclass
class RecordingServer:
    """Scripted HTTP handler that records every request it receives.

    The handler may be sync or async; ``httpx.MockTransport`` accepts both.
    """

    handler: Handler
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def bodies(self) -> list[dict[str, Any]]:
        """JSON bodies of the recorded requests, in order."""
        return [json.loads(r.content) if r.content else {} for r in self.requests]


def json_response(
    body: Any, status_code: int = 200, headers: dict[str, str] | None = None
) -> httpx.Response:
    return httpx.Response(status_code, json=body, headers=headers)


def sse_response(text: str, headers: dict[str, str] | None = None) -> httpx.Response:
    """A 200 ``text/event-stream`` response with ``text`` as its body."""
    return httpx.Response(
        200,
        content=text.encode(),
        headers={"content-type": "text/event-stream", **(headers or {})},
    )


def sse_body(*payloads: str) -> str:
    """Join payloads into ``data:`` events separated by blank lines."""
    return "".join(f"data: {p}\n\n" for p in payloads)


def openai_completion(
    content: str = "Hello",
    *,
    model: str = "gpt-4o",
    total_tokens: int = 9,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {
            "prompt_tokens": total_tokens - 2,
            "completion_tokens": 2,
            "total_tokens": total_tokens,
        },
    }


def anthropic_message(text: str = "Hello", *, model: str = "claude-sonnet-4-5"):
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 5, "output_tokens": 3},
    }


def gemini_response(text: str = "Hello") -> dict[str, Any]:
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {
            "promptTokenCount": 4,
            "candidatesTokenCount": 2,
            "totalTokenCount": 6,
        },
        "modelVersion": "gemini-2.5-flash",
        "responseId": "resp-1",
    }
