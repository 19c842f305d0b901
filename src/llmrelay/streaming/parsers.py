"""Per-provider SSE payload parsers.

Each parser turns one ``data:`` payload into a canonical ``Chunk``. Parsers
raise ValueError on malformed JSON, which the stream engine logs and skips.
"""

from __future__ import annotations

import json
from typing import Any

from llmrelay.translation import anthropic as anthropic_wire
from llmrelay.translation import gemini as gemini_wire
from llmrelay.translation.openai import usage_from_openai
from llmrelay.types import Chunk, ToolCallDelta, Usage

from .stream import DONE_SENTINEL


def _load(data: str) -> dict[str, Any]:
    value = json.loads(data)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


def _error_message(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("message") or raw.get("type") or raw)
    return str(raw)


class OpenAIStreamParser:
    """OpenAI-compatible ``chat.completion.chunk`` payloads.

    The stream ends at ``[DONE]`` or at the first chunk carrying a
    ``finish_reason``.
    """

    def parse_line(self, data: str) -> Chunk | None:
        if data == DONE_SENTINEL:
            return Chunk(done=True)
        payload = _load(data)
        if "error" in payload:
            return Chunk(done=True, error=_error_message(payload["error"]))

        usage = usage_from_openai(payload.get("usage"))
        choices = payload.get("choices") or []
        if not choices:
            if usage is None:
                return None
            return Chunk(
                id=payload.get("id") or "",
                model=payload.get("model") or "",
                usage=usage,
            )

        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content") or ""
        if not content:
            content = delta.get("reasoning_content") or delta.get("reasoning") or ""
        tool_calls = [
            ToolCallDelta(
                index=int(tc.get("index") or 0),
                id=tc.get("id") or "",
                name=(tc.get("function") or {}).get("name") or "",
                arguments=(tc.get("function") or {}).get("arguments") or "",
            )
            for tc in delta.get("tool_calls") or []
        ]
        finish_reason = choice.get("finish_reason")
        return Chunk(
            id=payload.get("id") or "",
            model=payload.get("model") or "",
            created=int(payload.get("created") or 0),
            content=content,
            done=bool(finish_reason),
            finish_reason=finish_reason,
            usage=usage,
            tool_calls=tool_calls,
        )

    def is_done(self, data: str) -> bool:
        return data == DONE_SENTINEL


class AnthropicStreamParser:
    """Anthropic named-event payloads.

    Stateful: the message id, model and input token count arrive in
    ``message_start`` and are attached to every later chunk. Tool-call
    fragments are indexed by their content block position.
    """

    def __init__(self) -> None:
        self._id = ""
        self._model = ""
        self._input_tokens = 0
        self._output_tokens = 0
        self._stop_reason: str | None = None
        self._tool_index: dict[int, int] = {}

    def _chunk(self, **kwargs: Any) -> Chunk:
        return Chunk(id=self._id, model=self._model, **kwargs)

    def _usage(self) -> Usage:
        return Usage.of(self._input_tokens, self._output_tokens)

    def parse_line(self, data: str) -> Chunk | None:
        payload = _load(data)
        event = payload.get("type")

        if event == "message_start":
            message = payload.get("message") or {}
            self._id = message.get("id") or ""
            self._model = message.get("model") or ""
            usage = message.get("usage") or {}
            self._input_tokens = int(usage.get("input_tokens") or 0)
            self._output_tokens = int(usage.get("output_tokens") or 0)
            return None

        if event == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                index = self._tool_index.setdefault(
                    int(payload.get("index") or 0), len(self._tool_index)
                )
                return self._chunk(
                    tool_calls=[
                        ToolCallDelta(
                            index=index,
                            id=block.get("id") or "",
                            name=block.get("name") or "",
                        )
                    ]
                )
            if block.get("type") == "text" and block.get("text"):
                return self._chunk(content=block["text"])
            return None

        if event == "content_block_delta":
            delta = payload.get("delta") or {}
            kind = delta.get("type")
            if kind == "text_delta":
                return self._chunk(content=delta.get("text") or "")
            if kind == "input_json_delta":
                block_index = int(payload.get("index") or 0)
                index = self._tool_index.setdefault(
                    block_index, len(self._tool_index)
                )
                return self._chunk(
                    tool_calls=[
                        ToolCallDelta(
                            index=index, arguments=delta.get("partial_json") or ""
                        )
                    ]
                )
            # thinking_delta and signature_delta have no canonical channel.
            return None

        if event == "message_delta":
            delta = payload.get("delta") or {}
            self._stop_reason = delta.get("stop_reason") or self._stop_reason
            usage = payload.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self._output_tokens = int(usage["output_tokens"])
            return None

        if event == "message_stop":
            if self._stop_reason == "refusal":
                return self._chunk(
                    done=True,
                    finish_reason="refusal",
                    usage=self._usage(),
                    error="response blocked: the model refused the request",
                )
            return self._chunk(
                done=True,
                finish_reason=anthropic_wire.map_stop_reason(self._stop_reason),
                usage=self._usage(),
            )

        if event == "error":
            return self._chunk(done=True, error=_error_message(payload.get("error")))

        # ping, content_block_stop
        return None

    def is_done(self, data: str) -> bool:
        try:
            return _load(data).get("type") == "message_stop"
        except ValueError:
            return False


class GeminiStreamParser:
    """Gemini ``streamGenerateContent?alt=sse`` payloads.

    Function calls arrive whole, so each becomes a complete tool-call delta
    with a synthesized ``call_<n>`` id.
    """

    def __init__(self) -> None:
        self._calls = 0

    def parse_line(self, data: str) -> Chunk | None:
        payload = gemini_wire.unwrap(_load(data))
        if "error" in payload:
            return Chunk(done=True, error=_error_message(payload["error"]))

        usage = gemini_wire.usage_from_gemini(payload.get("usageMetadata"))
        chunk_id = payload.get("responseId") or ""
        model = payload.get("modelVersion") or ""
        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            return Chunk(
                id=chunk_id,
                model=model,
                done=True,
                usage=usage,
                error=(
                    "response blocked by safety filters "
                    f"({feedback['blockReason']})"
                ),
            )

        candidates = payload.get("candidates") or []
        if not candidates:
            if usage is None:
                return None
            return Chunk(id=chunk_id, model=model, usage=usage)

        candidate = candidates[0]
        reason = candidate.get("finishReason")
        if reason == "SAFETY":
            return Chunk(
                id=chunk_id,
                model=model,
                done=True,
                finish_reason="safety",
                usage=usage,
                error="response blocked by safety filters (SAFETY)",
            )

        texts: list[str] = []
        tool_calls: list[ToolCallDelta] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                fc = part["functionCall"]
                tool_calls.append(
                    ToolCallDelta(
                        index=self._calls,
                        id=f"call_{self._calls}",
                        name=fc.get("name") or "",
                        arguments=json.dumps(fc.get("args") or {}),
                    )
                )
                self._calls += 1
            elif not part.get("thought") and "text" in part:
                texts.append(part["text"])

        finish_reason = None
        if reason:
            finish_reason = gemini_wire.map_finish_reason(
                reason, has_tool_calls=self._calls > 0
            )
        return Chunk(
            id=chunk_id,
            model=model,
            content="".join(texts),
            done=bool(reason),
            finish_reason=finish_reason,
            usage=usage,
            tool_calls=tool_calls,
        )

    def is_done(self, data: str) -> bool:
        return False
