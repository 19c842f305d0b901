"""Streaming: SSE decoding, per-provider parsers and stream combinators."""

from .parsers import (
    AnthropicStreamParser,
    GeminiStreamParser,
    OpenAIStreamParser,
)
from .stream import (
    CancellableStream,
    ChatStream,
    ErrorStream,
    LineParser,
    MockStream,
    SSEStream,
    UsageRecordingStream,
    collect_stream,
)

__all__ = [
    "AnthropicStreamParser",
    "CancellableStream",
    "ChatStream",
    "ErrorStream",
    "GeminiStreamParser",
    "LineParser",
    "MockStream",
    "OpenAIStreamParser",
    "SSEStream",
    "UsageRecordingStream",
    "collect_stream",
]
