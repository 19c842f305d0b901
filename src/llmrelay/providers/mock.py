"""Mock provider for testing."""

from __future__ import annotations

from collections import deque
import time
from typing import TYPE_CHECKING

from llmrelay.config import ProviderConfig
from llmrelay.providers._runtime import (
    ProviderProfile,
    ProviderRuntime,
    RuntimeBackedProvider,
)
from llmrelay.providers.base import ProviderCapabilities
from llmrelay.streaming import CancellableStream, MockStream
from llmrelay.types import (
    Chunk,
    Completion,
    Message,
    ModelInfo,
    ProviderType,
    ToolCallDelta,
    ToolFormat,
    Usage,
)

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Iterable

    from llmrelay.streaming import ChatStream
    from llmrelay.types import GenerateOptions

    MockResponse = str | Completion | BaseException

PROFILE = ProviderProfile(
    type=ProviderType.MOCK,
    base_url="",
    default_model="mock-model",
    description="Canned responses for tests; makes no network calls",
    tool_format=ToolFormat.OPENAI,
    capabilities=ProviderCapabilities(model_listing=False),
)


class MockProvider(RuntimeBackedProvider):
    """Mock provider for testing without API calls.

    Queued responses are returned in order: a string becomes the assistant
    text, a Completion is returned as-is and an exception is raised. With the
    queue empty the provider echoes the last user message.
    """

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        responses: Iterable[MockResponse] = (),
        models: Iterable[ModelInfo] = (),
    ) -> None:
        config = config or ProviderConfig(type=ProviderType.MOCK, name="mock")
        self.runtime = ProviderRuntime(config, PROFILE)
        self._responses: deque[MockResponse] = deque(responses)
        self._models = list(models) or [
            ModelInfo(id=PROFILE.default_model, name="Mock", provider="mock")
        ]
        #: Every request seen, in order.
        self.requests: list[GenerateOptions] = []

    def queue(self, *responses: MockResponse) -> None:
        self._responses.extend(responses)

    def is_authenticated(self) -> bool:
        return True

    async def get_models(self) -> list[ModelInfo]:
        return list(self._models)

    def _next(self, options: GenerateOptions, model: str) -> Completion:
        if self._responses:
            item = self._responses.popleft()
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Completion):
                return item
            text = item
        else:
            users = [m for m in options.resolved_messages() if m.role == "user"]
            text = f"echo: {users[-1].content[:100]}" if users else "echo:"
        return Completion(
            message=Message(role="assistant", content=text),
            usage=Usage.of(10, 10),
            finish_reason="stop",
            id="mock-1",
            model=model,
        )

    async def generate_chat_completion(
        self,
        options: GenerateOptions,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ChatStream:
        """Return the next canned response as a stream."""
        rt = self.runtime
        rt.metrics.record_request()
        start = time.monotonic()
        try:
            options.validate()
            model = rt.resolve_model(options)
            self.requests.append(options)
            completion = self._next(options, model)
        except Exception as e:
            rt.metrics.record_error(e, time.monotonic() - start)
            raise
        usage = completion.usage
        rt.metrics.record_success(
            time.monotonic() - start, usage.total_tokens if usage else 0
        )

        if options.stream:
            deltas = [
                ToolCallDelta(
                    index=i,
                    id=call.id,
                    name=call.function.name,
                    arguments=call.function.arguments,
                )
                for i, call in enumerate(completion.message.tool_calls)
            ]
            stream: ChatStream = MockStream(
                [
                    Chunk(
                        id=completion.id,
                        model=completion.model,
                        content=completion.content,
                        tool_calls=deltas,
                    ),
                    Chunk(
                        id=completion.id,
                        model=completion.model,
                        done=True,
                        finish_reason=completion.finish_reason,
                        usage=usage,
                    ),
                ]
            )
        else:
            stream = MockStream([completion.to_chunk()])
        if cancel is not None:
            return CancellableStream(stream, cancel)
        return stream
