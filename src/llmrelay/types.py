"""Canonical, provider-agnostic data model.

Every provider translates to and from these shapes; nothing here knows about
any particular wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Any, Literal

from llmrelay.errors import InvalidRequestError

Role = Literal["system", "user", "assistant", "tool"]
ContentType = Literal[
    "text", "image", "document", "audio", "tool_use", "tool_result", "thinking"
]
ToolChoiceMode = Literal["auto", "required", "none", "specific"]


class ProviderType(str, Enum):
    """Supported backends."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    QWEN = "qwen"
    CEREBRAS = "cerebras"
    OPENROUTER = "openrouter"
    MOCK = "mock"


class AuthMethod(str, Enum):
    """How a credential is presented to a provider."""

    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"
    OAUTH = "oauth"
    CUSTOM = "custom"


class ToolFormat(str, Enum):
    """Tool-calling dialect a provider speaks natively."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    XML = "xml"
    HERMES = "hermes"
    TEXT = "text"


@dataclass(frozen=True)
class MediaSource:
    """Where the bytes of an image, document or audio part live."""

    type: Literal["base64", "url"]
    media_type: str = ""
    data: str = ""
    url: str = ""


@dataclass(frozen=True)
class ContentPart:
    """One typed piece of a multimodal message."""

    type: ContentType
    text: str = ""
    source: MediaSource | None = None
    # tool_use
    id: str = ""
    name: str = ""
    input: dict[str, Any] | None = None
    # tool_result
    tool_use_id: str = ""
    content: Any = None
    # thinking
    thinking: str = ""

    @classmethod
    def from_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def image_base64(cls, media_type: str, data: str) -> ContentPart:
        return cls(
            type="image",
            source=MediaSource(type="base64", media_type=media_type, data=data),
        )

    @classmethod
    def image_url(cls, url: str, media_type: str = "") -> ContentPart:
        return cls(
            type="image", source=MediaSource(type="url", media_type=media_type, url=url)
        )

    @classmethod
    def tool_use(
        cls, call_id: str, name: str, arguments: dict[str, Any]
    ) -> ContentPart:
        return cls(type="tool_use", id=call_id, name=name, input=arguments)

    @classmethod
    def tool_result(cls, tool_use_id: str, content: Any, name: str = "") -> ContentPart:
        return cls(
            type="tool_result", tool_use_id=tool_use_id, content=content, name=name
        )

    @classmethod
    def from_thinking(cls, thinking: str) -> ContentPart:
        return cls(type="thinking", thinking=thinking)


@dataclass(frozen=True)
class ToolCallFunction:
    """Function name plus JSON-encoded arguments."""

    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model.

    ``function.arguments`` stays an opaque JSON string; use ``parsed_arguments``
    when structured access is needed.
    """

    id: str
    function: ToolCallFunction
    type: Literal["function"] = "function"

    def __post_init__(self) -> None:
        if not self.function.arguments.strip():
            object.__setattr__(
                self, "function", ToolCallFunction(self.function.name, "{}")
            )

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the arguments string; malformed JSON yields an empty dict."""
        try:
            value = json.loads(self.function.arguments)
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class ToolCallDelta:
    """An incremental tool-call fragment from a stream, keyed by index."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class Message:
    """A conversational message turn.

    When ``parts`` are present, ``content`` is always the concatenation of the
    text parts, for backends that only accept flat strings.
    """

    role: Role
    content: str = ""
    parts: list[ContentPart] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    reasoning: str | None = None
    reasoning_content: str | None = None

    def __post_init__(self) -> None:
        if self.parts:
            text = "".join(p.text for p in self.parts if p.type == "text")
            object.__setattr__(self, "content", text)

    def content_parts(self) -> list[ContentPart]:
        """Return parts, synthesizing a single text part from flat content."""
        if self.parts:
            return list(self.parts)
        if self.content:
            return [ContentPart.from_text(self.content)]
        return []

    @property
    def has_media(self) -> bool:
        return any(p.type != "text" for p in self.parts)


@dataclass(frozen=True)
class Tool:
    """A function the model may call."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class ToolChoice:
    """Tool selection policy: auto, required, none, or one specific function."""

    mode: ToolChoiceMode = "auto"
    function_name: str | None = None

    @classmethod
    def auto(cls) -> ToolChoice:
        return cls("auto")

    @classmethod
    def required(cls) -> ToolChoice:
        return cls("required")

    @classmethod
    def none(cls) -> ToolChoice:
        return cls("none")

    @classmethod
    def specific(cls, name: str) -> ToolChoice:
        return cls("specific", name)


@dataclass(frozen=True)
class Usage:
    """Token accounting for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt: int, completion: int, total: int | None = None) -> Usage:
        return cls(prompt, completion, prompt + completion if total is None else total)


@dataclass(frozen=True)
class Chunk:
    """An incremental piece of an assistant message.

    A chunk with ``done=True`` terminates its stream. Non-streaming calls
    produce a single done chunk whose ``message`` carries the full response.
    """

    id: str = ""
    model: str = ""
    created: int = 0
    content: str = ""
    done: bool = False
    finish_reason: str | None = None
    usage: Usage | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    error: str | None = None
    message: Message | None = None


@dataclass(frozen=True)
class Completion:
    """A whole assistant response, as produced by one non-streaming call."""

    message: Message
    usage: Usage | None = None
    finish_reason: str | None = None
    id: str = ""
    model: str = ""

    @property
    def content(self) -> str:
        return self.message.content

    def to_chunk(self) -> Chunk:
        """The single terminal chunk a non-streaming call yields."""
        return Chunk(
            id=self.id,
            model=self.model,
            content=self.message.content,
            done=True,
            finish_reason=self.finish_reason,
            usage=self.usage,
            message=self.message,
        )


@dataclass(frozen=True)
class GenerateOptions:
    """A canonical chat-completion request."""

    messages: list[Message] = field(default_factory=list)
    prompt: str = ""
    model: str = ""
    max_tokens: int = 0
    temperature: float | None = None
    stream: bool = False
    tools: list[Tool] = field(default_factory=list)
    tool_choice: ToolChoice | None = None
    #: ``"json"`` or a JSON-schema dict for structured output.
    response_format: str | dict[str, Any] | None = None

    def resolved_messages(self) -> list[Message]:
        """Messages to send; a bare prompt becomes one user message."""
        if self.messages:
            return list(self.messages)
        if self.prompt:
            return [Message(role="user", content=self.prompt)]
        return []

    def effective_tool_choice(self) -> ToolChoice | None:
        """Tool choice to send; defaults to auto when tools are present."""
        if self.tool_choice is not None:
            return self.tool_choice
        return ToolChoice.auto() if self.tools else None

    def validate(self) -> None:
        """Raise InvalidRequestError when the request cannot be sent."""
        if not self.resolved_messages():
            raise InvalidRequestError("at least one message is required")
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise InvalidRequestError("temperature must be between 0 and 2")
        if self.max_tokens < 0:
            raise InvalidRequestError("max_tokens must be non-negative")
        if self.tool_choice is not None and not self.tools:
            raise InvalidRequestError("tool_choice specified but no tools provided")
        names = [t.name for t in self.tools]
        if len(names) != len(set(names)):
            raise InvalidRequestError(
                "tool names must be unique",
                hint=f"Duplicate tool names in {sorted(names)}",
            )


@dataclass(frozen=True)
class ModelInfo:
    """A model advertised by a provider."""

    id: str
    name: str = ""
    provider: str = ""
    description: str = ""
    max_tokens: int = 0
    supports_streaming: bool = True
    supports_tool_calling: bool = False
