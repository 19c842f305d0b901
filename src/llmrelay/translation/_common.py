"""Helpers shared by the wire-format translators."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from llmrelay.types import MediaSource

THINKING_PREFIX = "[Thinking]: "


def data_url(source: MediaSource) -> str:
    """``data:<mime>;base64,<payload>`` for inline media."""
    return f"data:{source.media_type};base64,{source.data}"


def tool_result_text(content: Any) -> str:
    """Flatten a tool_result payload to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, str):
                texts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                texts.append(str(item.get("text", "")))
            elif getattr(item, "type", None) == "text":
                texts.append(item.text)
        return "".join(texts)
    try:
        return json.dumps(content)
    except (TypeError, ValueError):
        return str(content)


def parse_arguments(arguments: str) -> dict[str, Any]:
    """Decode tool-call arguments; malformed or non-object JSON yields ``{}``."""
    try:
        value = json.loads(arguments or "{}")
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}
