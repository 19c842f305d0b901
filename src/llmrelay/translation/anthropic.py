"""Canonical <-> Anthropic Messages API wire format."""

from __future__ import annotations

import json
from typing import Any

from llmrelay.errors import APIError, ErrorKind
from llmrelay.translation._common import parse_arguments, tool_result_text
from llmrelay.types import (
    Completion,
    ContentPart,
    GenerateOptions,
    Message,
    ModelInfo,
    Tool,
    ToolCall,
    ToolCallFunction,
    ToolChoice,
    Usage,
)

DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, str] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def map_stop_reason(stop_reason: str | None) -> str | None:
    """Map Anthropic ``stop_reason`` onto the OpenAI-style finish reasons."""
    if not stop_reason:
        return None
    return _STOP_REASONS.get(stop_reason, stop_reason)


# --- Tools ---


def tools_to_anthropic(tools: list[Tool]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for t in tools:
        tool_def: dict[str, Any] = {"name": t.name, "input_schema": t.input_schema}
        if t.description:
            tool_def["description"] = t.description
        out.append(tool_def)
    return out


def tools_from_anthropic(raw: list[dict[str, Any]]) -> list[Tool]:
    return [
        Tool(
            name=item["name"],
            description=item.get("description") or "",
            input_schema=item.get("input_schema") or {"type": "object"},
        )
        for item in raw
        if item.get("name")
    ]


def tool_choice_to_anthropic(choice: ToolChoice | None) -> dict[str, str] | None:
    if choice is None:
        return None
    if choice.mode == "required":
        return {"type": "any"}
    if choice.mode == "specific" and choice.function_name:
        return {"type": "tool", "name": choice.function_name}
    if choice.mode == "none":
        return {"type": "none"}
    return {"type": "auto"}


def tool_call_to_anthropic(call: ToolCall) -> dict[str, Any]:
    return {
        "type": "tool_use",
        "id": call.id,
        "name": call.function.name,
        "input": parse_arguments(call.function.arguments),
    }


def tool_call_from_anthropic(block: dict[str, Any]) -> ToolCall:
    return ToolCall(
        id=block.get("id") or "",
        function=ToolCallFunction(
            name=block.get("name") or "",
            arguments=json.dumps(block.get("input") or {}),
        ),
    )


# --- Messages ---


def _source(part: ContentPart) -> dict[str, str] | None:
    source = part.source
    if source is None:
        return None
    if source.type == "url":
        return {"type": "url", "url": source.url}
    return {"type": "base64", "media_type": source.media_type, "data": source.data}


def _part_to_block(part: ContentPart) -> dict[str, Any] | None:
    if part.type == "text":
        return {"type": "text", "text": part.text}
    if part.type in ("image", "document"):
        source = _source(part)
        return {"type": part.type, "source": source} if source else None
    if part.type == "tool_use":
        return {
            "type": "tool_use",
            "id": part.id,
            "name": part.name,
            "input": part.input or {},
        }
    if part.type == "tool_result":
        return {
            "type": "tool_result",
            "tool_use_id": part.tool_use_id,
            "content": tool_result_text(part.content),
        }
    # Thinking blocks need a provider signature to replay; audio is unsupported.
    return None


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation, so consecutive
    same-role turns (a tool result followed by a user prompt, say) become one
    message with both sets of content blocks.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)


def messages_to_anthropic(
    messages: list[Message],
) -> tuple[str, list[dict[str, Any]]]:
    """Return ``(system_prompt, wire_messages)``.

    System messages are lifted out; tool messages become user turns carrying
    a ``tool_result`` block.
    """
    system: list[str] = []
    wire: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system.append(msg.content)
            continue
        if msg.role == "tool":
            _append_message(
                wire,
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.tool_call_id or "",
                            "content": msg.content,
                        }
                    ],
                },
            )
            continue

        blocks: list[dict[str, Any]] = []
        if msg.parts:
            for part in msg.parts:
                block = _part_to_block(part)
                if block is not None:
                    blocks.append(block)
        elif msg.content:
            blocks.append({"type": "text", "text": msg.content})
        if msg.role == "assistant":
            blocks.extend(tool_call_to_anthropic(c) for c in msg.tool_calls)
        if not blocks:
            continue
        # Single text blocks go over the wire as plain strings.
        content: str | list[dict[str, Any]] = blocks
        if len(blocks) == 1 and blocks[0]["type"] == "text":
            content = blocks[0]["text"]
        _append_message(wire, {"role": msg.role, "content": content})
    return "\n\n".join(system), wire


def message_from_anthropic(body: dict[str, Any]) -> Message:
    texts: list[str] = []
    thinking: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in body.get("content") or []:
        block_type = block.get("type")
        if block_type == "text":
            texts.append(block.get("text") or "")
        elif block_type == "thinking":
            thinking.append(block.get("thinking") or "")
        elif block_type == "tool_use":
            tool_calls.append(tool_call_from_anthropic(block))
    return Message(
        role="assistant",
        content="".join(texts),
        tool_calls=tool_calls,
        reasoning_content="".join(thinking) or None,
    )


def usage_from_anthropic(raw: dict[str, Any] | None) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage.of(
        int(raw.get("input_tokens") or 0), int(raw.get("output_tokens") or 0)
    )


# --- Requests and responses ---


def build_request(
    options: GenerateOptions,
    model: str,
    *,
    stream: bool,
    max_tokens: int = 0,
    oauth: bool = False,
) -> dict[str, Any]:
    """Wire body for ``POST /v1/messages``.

    Under OAuth the system prompt is sent as a list of text blocks.
    """
    system, messages = messages_to_anthropic(options.resolved_messages())
    body: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": options.max_tokens or max_tokens or DEFAULT_MAX_TOKENS,
    }
    if stream:
        body["stream"] = True
    if system:
        body["system"] = [{"type": "text", "text": system}] if oauth else system
    if options.temperature is not None:
        # Anthropic accepts 0..1; the canonical range is 0..2.
        body["temperature"] = min(options.temperature, 1.0)
    if options.tools:
        body["tools"] = tools_to_anthropic(options.tools)
        choice = tool_choice_to_anthropic(options.effective_tool_choice())
        if choice is not None:
            body["tool_choice"] = choice
    return body


def parse_response(body: dict[str, Any]) -> Completion:
    stop_reason = body.get("stop_reason")
    if stop_reason == "refusal":
        raise APIError(
            "response blocked: the model refused the request",
            kind=ErrorKind.INVALID_REQUEST,
            body=json.dumps(body),
            provider="anthropic",
        )
    return Completion(
        message=message_from_anthropic(body),
        usage=usage_from_anthropic(body.get("usage")),
        finish_reason=map_stop_reason(stop_reason),
        id=body.get("id") or "",
        model=body.get("model") or "",
    )


def parse_models(body: dict[str, Any]) -> list[ModelInfo]:
    return [
        ModelInfo(
            id=item["id"],
            name=item.get("display_name") or item["id"],
            provider="anthropic",
            supports_tool_calling=True,
        )
        for item in body.get("data") or []
        if item.get("id")
    ]
