"""OpenAI chat-completions provider and its OpenAI-compatible profiles.

OpenRouter, Cerebras and Qwen speak the same wire format and differ only in
defaults, rate-limit headers and extra request headers, so they are profiles
of one provider class rather than separate implementations.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from llmrelay.providers._runtime import (
    ProviderProfile,
    ProviderRuntime,
    RuntimeBackedProvider,
)
from llmrelay.providers.base import ProviderCapabilities
from llmrelay.streaming import SSEStream
from llmrelay.streaming.parsers import OpenAIStreamParser
from llmrelay.translation import openai as wire
from llmrelay.types import ProviderType, ToolFormat

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable

    import httpx

    from llmrelay.auth.oauth import TokenRefreshCallback
    from llmrelay.config import ProviderConfig
    from llmrelay.providers._runtime import Credential
    from llmrelay.streaming import ChatStream, LineParser
    from llmrelay.types import Completion, GenerateOptions, ModelInfo

logger = logging.getLogger(__name__)

PROFILES: dict[ProviderType, ProviderProfile] = {
    ProviderType.OPENAI: ProviderProfile(
        type=ProviderType.OPENAI,
        base_url="https://api.openai.com/v1",
        default_model="gpt-4o",
        description="OpenAI GPT models via the chat completions API",
        tool_format=ToolFormat.OPENAI,
        capabilities=ProviderCapabilities(oauth=True),
    ),
    ProviderType.OPENROUTER: ProviderProfile(
        type=ProviderType.OPENROUTER,
        base_url="https://openrouter.ai/api/v1",
        default_model="qwen/qwen3-coder",
        description="OpenRouter gateway to models from many vendors",
        tool_format=ToolFormat.OPENAI,
        capabilities=ProviderCapabilities(),
    ),
    ProviderType.CEREBRAS: ProviderProfile(
        type=ProviderType.CEREBRAS,
        base_url="https://api.cerebras.ai/v1",
        default_model="zai-glm-4.6",
        description="Cerebras fast inference with multi-key failover",
        tool_format=ToolFormat.OPENAI,
        capabilities=ProviderCapabilities(),
    ),
    ProviderType.QWEN: ProviderProfile(
        type=ProviderType.QWEN,
        base_url="https://portal.qwen.ai/v1",
        default_model="qwen3-coder-flash",
        description="Qwen models with multi-OAuth failover",
        tool_format=ToolFormat.OPENAI,
        capabilities=ProviderCapabilities(oauth=True),
    ),
}


class OpenAIProvider(RuntimeBackedProvider):
    """OpenAI-compatible ``/chat/completions`` provider."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
        stream_parser: Callable[[], LineParser] | None = None,
    ) -> None:
        """Initialize from a config whose type is OpenAI or a compatible profile.

        ``stream_parser`` builds the SSE parser for each streaming call, for
        OpenAI-compatible backends whose chunks deviate from the standard.
        """
        profile = PROFILES.get(config.type)
        if profile is None:
            profile = PROFILES[ProviderType.OPENAI]
        self.runtime = ProviderRuntime(
            config, profile, client=client, on_token_refresh=on_token_refresh
        )
        self._stream_parser = stream_parser or OpenAIStreamParser

    def _url(self, path: str) -> str:
        return f"{self.runtime.base_url}{path}"

    async def get_models(self) -> list[ModelInfo]:
        """List models via ``GET /models``."""
        rt = self.runtime

        async def list_models(cred: Credential) -> list[ModelInfo]:
            body = await rt.send_json(
                "GET",
                self._url("/models"),
                credential=cred,
                model="",
                phase="list_models",
            )
            return wire.parse_models(body, provider=rt.name)

        return await rt.with_credentials(list_models)

    async def generate_chat_completion(
        self,
        options: GenerateOptions,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ChatStream:
        """Run one chat completion, streaming when ``options.stream`` is set."""
        rt = self.runtime

        async def call(model: str, cred: Credential) -> Completion | ChatStream:
            body = wire.build_request(
                options, model, stream=options.stream, max_tokens=rt.max_tokens
            )
            if options.stream:
                response = await rt.send(
                    "POST",
                    self._url("/chat/completions"),
                    credential=cred,
                    model=model,
                    phase="stream",
                    json_body=body,
                    stream=True,
                )
                return SSEStream(response, self._stream_parser(), provider=rt.name)
            payload = await rt.send_json(
                "POST",
                self._url("/chat/completions"),
                credential=cred,
                model=model,
                phase="generate",
                json_body=body,
            )
            return wire.parse_response(payload)

        return await rt.generate(options, call, cancel=cancel)
