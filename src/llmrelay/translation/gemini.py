"""Canonical <-> Gemini ``generateContent`` wire format.

Also understands the CloudCode envelope used when Gemini is reached through
OAuth with a project id: requests are wrapped as ``{model, project, request}``
and responses arrive as ``{response: ...}``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from llmrelay.errors import APIError, ErrorKind
from llmrelay.translation._common import THINKING_PREFIX, parse_arguments
from llmrelay.types import (
    Completion,
    ContentPart,
    GenerateOptions,
    Message,
    ModelInfo,
    Tool,
    ToolCall,
    ToolCallFunction,
    Usage,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.95
DEFAULT_TOP_K = 40
DEFAULT_MAX_OUTPUT_TOKENS = 8192

_BLOCKED_REASONS = frozenset(
    {"SAFETY", "RECITATION", "PROHIBITED_CONTENT", "BLOCKLIST"}
)


def map_finish_reason(
    reason: str | None, *, has_tool_calls: bool = False
) -> str | None:
    if has_tool_calls:
        return "tool_calls"
    if not reason:
        return None
    if reason == "STOP":
        return "stop"
    if reason == "MAX_TOKENS":
        return "length"
    return reason.lower()


def unwrap(body: dict[str, Any]) -> dict[str, Any]:
    """Strip the CloudCode ``{response: ...}`` envelope if present."""
    inner = body.get("response")
    if isinstance(inner, dict) and "candidates" not in body:
        return inner
    return body


# --- Tools ---


def schema_to_gemini(schema: dict[str, Any]) -> dict[str, Any]:
    """Reduce a JSON schema to the subset Gemini function declarations accept."""
    out: dict[str, Any] = {"type": schema.get("type") or "object"}
    if schema.get("description"):
        out["description"] = schema["description"]
    if "enum" in schema:
        out["enum"] = list(schema["enum"])
    props = schema.get("properties")
    if isinstance(props, dict):
        out["properties"] = {
            name: schema_to_gemini(prop) if isinstance(prop, dict) else {}
            for name, prop in props.items()
        }
    items = schema.get("items")
    if isinstance(items, dict):
        out["items"] = schema_to_gemini(items)
    if schema.get("required"):
        out["required"] = list(schema["required"])
    return out


def tools_to_gemini(tools: list[Tool]) -> list[dict[str, Any]]:
    if not tools:
        return []
    declarations = [
        {
            "name": t.name,
            "description": t.description,
            "parameters": schema_to_gemini(t.input_schema),
        }
        for t in tools
    ]
    return [{"function_declarations": declarations}]


def tools_from_gemini(raw: list[dict[str, Any]]) -> list[Tool]:
    tools: list[Tool] = []
    for group in raw:
        declarations = (
            group.get("function_declarations")
            or group.get("functionDeclarations")
            or []
        )
        for decl in declarations:
            if not decl.get("name"):
                continue
            tools.append(
                Tool(
                    name=decl["name"],
                    description=decl.get("description") or "",
                    input_schema=decl.get("parameters") or {"type": "object"},
                )
            )
    return tools


# --- Messages ---


def _function_response(name: str, content: Any) -> dict[str, Any]:
    if isinstance(content, dict):
        response = content
    elif isinstance(content, list):
        texts = [
            item.get("text", "") if isinstance(item, dict) else str(item)
            for item in content
        ]
        response = {"result": "".join(texts)}
    else:
        response = {"result": "" if content is None else str(content)}
    return {"functionResponse": {"name": name, "response": response}}


def _part_to_gemini(
    part: ContentPart, names: dict[str, str]
) -> dict[str, Any] | None:
    if part.type == "text":
        return {"text": part.text}
    if part.type == "thinking":
        return {"text": THINKING_PREFIX + part.thinking}
    if part.type == "tool_use":
        return {"functionCall": {"name": part.name, "args": part.input or {}}}
    if part.type == "tool_result":
        name = part.name or names.get(part.tool_use_id, part.tool_use_id)
        return _function_response(name, part.content)
    source = part.source
    if source is None:
        return None
    if source.type == "url":
        return {"fileData": {"mimeType": source.media_type, "fileUri": source.url}}
    return {"inlineData": {"mimeType": source.media_type, "data": source.data}}


def _append_content(contents: list[dict[str, Any]], role: str, parts: list) -> None:
    if not parts:
        return
    if contents and contents[-1]["role"] == role:
        contents[-1]["parts"].extend(parts)
    else:
        contents.append({"role": role, "parts": parts})


def messages_to_gemini(
    messages: list[Message],
) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """Return ``(system_instruction, contents)``.

    Tool results need the function *name*, which canonical tool messages only
    carry by call id, so names are resolved from earlier assistant calls.
    """
    names: dict[str, str] = {}
    system: list[str] = []
    contents: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system.append(msg.content)
            continue
        if msg.role == "tool":
            call_id = msg.tool_call_id or ""
            part = _function_response(names.get(call_id, call_id), msg.content)
            _append_content(contents, "user", [part])
            continue

        parts: list[dict[str, Any]] = []
        for cp in msg.content_parts():
            if cp.type == "tool_use":
                names[cp.id] = cp.name
            wire = _part_to_gemini(cp, names)
            if wire is not None:
                parts.append(wire)
        for call in msg.tool_calls:
            names[call.id] = call.function.name
            parts.append(
                {
                    "functionCall": {
                        "name": call.function.name,
                        "args": parse_arguments(call.function.arguments),
                    }
                }
            )
        role = "model" if msg.role == "assistant" else "user"
        _append_content(contents, role, parts)

    instruction = None
    if system:
        instruction = {"parts": [{"text": "\n\n".join(system)}]}
    return instruction, contents


def usage_from_gemini(raw: dict[str, Any] | None) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    prompt = int(raw.get("promptTokenCount") or 0)
    completion = int(raw.get("candidatesTokenCount") or 0)
    total = raw.get("totalTokenCount")
    return Usage.of(prompt, completion, int(total) if total is not None else None)


# --- Requests and responses ---


def build_request(
    options: GenerateOptions, *, max_tokens: int = 0
) -> dict[str, Any]:
    """Wire body for ``models/{model}:generateContent``."""
    instruction, contents = messages_to_gemini(options.resolved_messages())
    config: dict[str, Any] = {
        "temperature": (
            options.temperature
            if options.temperature is not None
            else DEFAULT_TEMPERATURE
        ),
        "topP": DEFAULT_TOP_P,
        "topK": DEFAULT_TOP_K,
        "maxOutputTokens": (
            options.max_tokens or max_tokens or DEFAULT_MAX_OUTPUT_TOKENS
        ),
    }
    fmt = options.response_format
    if isinstance(fmt, dict):
        config["responseMimeType"] = "application/json"
        config["responseSchema"] = schema_to_gemini(fmt)
    elif fmt == "json":
        config["responseMimeType"] = "application/json"

    body: dict[str, Any] = {"contents": contents, "generationConfig": config}
    if instruction is not None:
        body["systemInstruction"] = instruction
    if options.tools:
        body["tools"] = tools_to_gemini(options.tools)
        choice = options.effective_tool_choice()
        if choice is not None and choice.mode != "auto":
            mode = {"required": "ANY", "none": "NONE", "specific": "ANY"}[choice.mode]
            fc_config: dict[str, Any] = {"mode": mode}
            if choice.mode == "specific" and choice.function_name:
                fc_config["allowedFunctionNames"] = [choice.function_name]
            body["toolConfig"] = {"functionCallingConfig": fc_config}
    return body


def wrap_cloudcode(
    body: dict[str, Any], *, model: str, project: str
) -> dict[str, Any]:
    return {"model": model, "project": project, "request": body}


def _blocked(reason: str, body: dict[str, Any]) -> APIError:
    return APIError(
        f"response blocked by safety filters ({reason})",
        kind=ErrorKind.INVALID_REQUEST,
        body=json.dumps(body),
        provider="gemini",
        hint="Rephrase the prompt or adjust the safety settings.",
    )


def parse_response(body: dict[str, Any]) -> Completion:
    body = unwrap(body)
    feedback = body.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise _blocked(feedback["blockReason"], body)
    candidates = body.get("candidates") or []
    if not candidates:
        raise APIError(
            "response contained no candidates",
            kind=ErrorKind.SERVER,
            body=json.dumps(body),
            provider="gemini",
        )
    candidate = candidates[0]
    reason = candidate.get("finishReason")
    if reason in _BLOCKED_REASONS:
        raise _blocked(reason, body)

    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        if "functionCall" in part:
            fc = part["functionCall"]
            tool_calls.append(
                ToolCall(
                    id=f"call_{len(tool_calls)}",
                    function=ToolCallFunction(
                        fc.get("name") or "", json.dumps(fc.get("args") or {})
                    ),
                )
            )
        elif part.get("thought"):
            continue
        elif "text" in part:
            texts.append(part["text"])

    return Completion(
        message=Message(
            role="assistant", content="".join(texts), tool_calls=tool_calls
        ),
        usage=usage_from_gemini(body.get("usageMetadata")),
        finish_reason=map_finish_reason(reason, has_tool_calls=bool(tool_calls)),
        id=body.get("responseId") or "",
        model=body.get("modelVersion") or "",
    )


def parse_models(body: dict[str, Any]) -> list[ModelInfo]:
    models: list[ModelInfo] = []
    for item in body.get("models") or []:
        model_id = (item.get("name") or "").removeprefix("models/")
        if not model_id:
            continue
        methods = item.get("supportedGenerationMethods") or []
        if methods and "generateContent" not in methods:
            logger.debug("skipping non-generative Gemini model %s", model_id)
            continue
        models.append(
            ModelInfo(
                id=model_id,
                name=item.get("displayName") or model_id,
                provider="gemini",
                description=item.get("description") or "",
                max_tokens=int(item.get("outputTokenLimit") or 0),
                supports_streaming="streamGenerateContent" in methods or not methods,
                supports_tool_calling=True,
            )
        )
    return models
