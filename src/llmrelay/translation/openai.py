"""Canonical <-> OpenAI chat-completions wire format.

Shared by every OpenAI-compatible backend (OpenRouter, Cerebras, Qwen).
"""

from __future__ import annotations

import json
import logging
from typing import Any

from llmrelay.errors import APIError, ErrorKind
from llmrelay.translation._common import data_url, tool_result_text
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

logger = logging.getLogger(__name__)


# --- Tools ---


def tools_to_openai(tools: list[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


def tools_from_openai(raw: list[dict[str, Any]]) -> list[Tool]:
    tools: list[Tool] = []
    for item in raw:
        fn = item.get("function") or {}
        if not fn.get("name"):
            continue
        tools.append(
            Tool(
                name=fn["name"],
                description=fn.get("description") or "",
                input_schema=fn.get("parameters") or {"type": "object"},
            )
        )
    return tools


def tool_choice_to_openai(
    choice: ToolChoice | None,
) -> str | dict[str, Any] | None:
    """Unknown modes fall back to ``"auto"``."""
    if choice is None:
        return None
    if choice.mode == "specific" and choice.function_name:
        return {"type": "function", "function": {"name": choice.function_name}}
    if choice.mode in ("auto", "required", "none"):
        return choice.mode
    return "auto"


def tool_call_to_openai(call: ToolCall) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {
            "name": call.function.name,
            "arguments": call.function.arguments,
        },
    }


def tool_call_from_openai(raw: dict[str, Any]) -> ToolCall:
    fn = raw.get("function") or {}
    arguments = fn.get("arguments")
    if isinstance(arguments, (dict, list)):
        arguments = json.dumps(arguments)
    return ToolCall(
        id=raw.get("id") or "",
        function=ToolCallFunction(
            name=fn.get("name") or "", arguments=arguments or "{}"
        ),
    )


# --- Messages ---


def _part_to_openai(part: ContentPart) -> dict[str, Any] | None:
    if part.type == "text":
        return {"type": "text", "text": part.text}
    source = part.source
    if source is None:
        return None
    if part.type == "image":
        url = source.url if source.type == "url" else data_url(source)
        return {"type": "image_url", "image_url": {"url": url}}
    if part.type == "audio" and source.type == "base64":
        fmt = source.media_type.rsplit("/", 1)[-1] or "wav"
        return {
            "type": "input_audio",
            "input_audio": {"data": source.data, "format": fmt},
        }
    if part.type == "document" and source.type == "base64":
        return {"type": "file", "file": {"file_data": data_url(source)}}
    logger.debug("dropping unsupported %s part for OpenAI wire format", part.type)
    return None


def message_to_openai(msg: Message) -> list[dict[str, Any]]:
    """One canonical message becomes one or more wire messages.

    ``tool_result`` parts are split out into separate ``tool`` messages.
    """
    if msg.role == "tool":
        return [
            {
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": msg.content,
            }
        ]

    out: list[dict[str, Any]] = []
    tool_calls = list(msg.tool_calls)
    wire_parts: list[dict[str, Any]] = []
    only_text = True
    for part in msg.parts:
        if part.type == "tool_result":
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": part.tool_use_id,
                    "content": tool_result_text(part.content),
                }
            )
        elif part.type == "tool_use":
            tool_calls.append(
                ToolCall(
                    id=part.id,
                    function=ToolCallFunction(
                        part.name, json.dumps(part.input or {})
                    ),
                )
            )
        elif part.type == "thinking":
            continue
        else:
            wire = _part_to_openai(part)
            if wire is not None:
                only_text = only_text and part.type == "text"
                wire_parts.append(wire)

    content: str | list[dict[str, Any]] | None
    if msg.parts and not only_text:
        content = wire_parts
    else:
        content = msg.content
    if not wire_parts and msg.parts and not msg.content:
        content = None

    if content is None and not tool_calls:
        return out
    wire: dict[str, Any] = {"role": msg.role, "content": content}
    if tool_calls:
        wire["tool_calls"] = [tool_call_to_openai(c) for c in tool_calls]
        if not content:
            wire["content"] = None
    return [*out, wire]


def messages_to_openai(messages: list[Message]) -> list[dict[str, Any]]:
    wire: list[dict[str, Any]] = []
    for msg in messages:
        wire.extend(message_to_openai(msg))
    return wire


def message_from_openai(raw: dict[str, Any]) -> Message:
    """Parse a wire message, falling back to reasoning text for empty content."""
    content = raw.get("content")
    if isinstance(content, list):
        content = "".join(
            p.get("text", "") for p in content if isinstance(p, dict)
        )
    content = content or ""
    reasoning_content = raw.get("reasoning_content") or None
    reasoning = raw.get("reasoning") or None
    if not content.strip():
        content = reasoning_content or reasoning or content
    tool_calls = [tool_call_from_openai(tc) for tc in raw.get("tool_calls") or []]
    role = raw.get("role") or "assistant"
    return Message(
        role=role,
        content=content,
        tool_calls=tool_calls,
        tool_call_id=raw.get("tool_call_id"),
        reasoning=reasoning,
        reasoning_content=reasoning_content,
    )


def usage_from_openai(raw: dict[str, Any] | None) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    prompt = int(raw.get("prompt_tokens") or 0)
    completion = int(raw.get("completion_tokens") or 0)
    total = raw.get("total_tokens")
    return Usage.of(prompt, completion, int(total) if total is not None else None)


# --- Requests and responses ---


def response_format_to_openai(
    fmt: str | dict[str, Any] | None,
) -> dict[str, Any] | None:
    if fmt is None:
        return None
    if isinstance(fmt, str):
        return {"type": "json_object"} if fmt == "json" else {"type": fmt}
    if fmt.get("type") in ("json_object", "json_schema", "text"):
        return fmt
    return {
        "type": "json_schema",
        "json_schema": {"name": fmt.get("title") or "response", "schema": fmt},
    }


def build_request(
    options: GenerateOptions,
    model: str,
    *,
    stream: bool,
    max_tokens: int = 0,
) -> dict[str, Any]:
    """Wire body for ``POST /chat/completions``."""
    body: dict[str, Any] = {
        "model": model,
        "messages": messages_to_openai(options.resolved_messages()),
        "stream": stream,
    }
    limit = options.max_tokens or max_tokens
    if limit:
        body["max_tokens"] = limit
    if options.temperature is not None:
        body["temperature"] = options.temperature
    if options.tools:
        body["tools"] = tools_to_openai(options.tools)
        choice = tool_choice_to_openai(options.effective_tool_choice())
        if choice is not None:
            body["tool_choice"] = choice
    fmt = response_format_to_openai(options.response_format)
    if fmt is not None:
        body["response_format"] = fmt
    return body


def parse_response(body: dict[str, Any]) -> Completion:
    choices = body.get("choices") or []
    if not choices:
        raise APIError(
            "response contained no choices",
            kind=ErrorKind.SERVER,
            body=json.dumps(body),
        )
    choice = choices[0]
    return Completion(
        message=message_from_openai(choice.get("message") or {}),
        usage=usage_from_openai(body.get("usage")),
        finish_reason=choice.get("finish_reason"),
        id=body.get("id") or "",
        model=body.get("model") or "",
    )


def parse_models(body: dict[str, Any], *, provider: str) -> list[ModelInfo]:
    models: list[ModelInfo] = []
    for item in body.get("data") or []:
        model_id = item.get("id")
        if not model_id:
            continue
        models.append(
            ModelInfo(
                id=model_id,
                name=item.get("name") or model_id,
                provider=provider,
                description=item.get("description") or "",
                max_tokens=int(item.get("context_length") or 0),
                supports_tool_calling=True,
            )
        )
    return models
