"""Anthropic Messages API provider."""

from __future__ import annotations

from typing import TYPE_CHECKING

from llmrelay.providers._runtime import (
    ProviderProfile,
    ProviderRuntime,
    RuntimeBackedProvider,
)
from llmrelay.providers.base import ProviderCapabilities
from llmrelay.streaming import SSEStream
from llmrelay.streaming.parsers import AnthropicStreamParser
from llmrelay.translation import anthropic as wire
from llmrelay.types import AuthMethod, ProviderType, ToolFormat

if TYPE_CHECKING:
    import asyncio

    import httpx

    from llmrelay.auth.oauth import TokenRefreshCallback
    from llmrelay.config import ProviderConfig
    from llmrelay.providers._runtime import Credential
    from llmrelay.streaming import ChatStream
    from llmrelay.types import Completion, GenerateOptions, ModelInfo

PROFILE = ProviderProfile(
    type=ProviderType.ANTHROPIC,
    base_url="https://api.anthropic.com",
    default_model="claude-sonnet-4-5",
    description="Anthropic Claude models with multi-key and OAuth failover",
    tool_format=ToolFormat.ANTHROPIC,
    capabilities=ProviderCapabilities(oauth=True),
    max_tokens=wire.DEFAULT_MAX_TOKENS,
)


class AnthropicProvider(RuntimeBackedProvider):
    """Claude via ``POST /v1/messages``."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        self.runtime = ProviderRuntime(
            config, PROFILE, client=client, on_token_refresh=on_token_refresh
        )

    def _url(self, path: str) -> str:
        return f"{self.runtime.base_url}{path}"

    async def get_models(self) -> list[ModelInfo]:
        """List models via ``GET /v1/models``."""
        rt = self.runtime

        async def list_models(cred: Credential) -> list[ModelInfo]:
            body = await rt.send_json(
                "GET",
                self._url("/v1/models"),
                credential=cred,
                model="",
                phase="list_models",
            )
            return wire.parse_models(body)

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
                options,
                model,
                stream=options.stream,
                max_tokens=rt.max_tokens,
                oauth=cred.method is AuthMethod.OAUTH,
            )
            if options.stream:
                response = await rt.send(
                    "POST",
                    self._url("/v1/messages"),
                    credential=cred,
                    model=model,
                    phase="stream",
                    json_body=body,
                    stream=True,
                )
                return SSEStream(response, AnthropicStreamParser(), provider=rt.name)
            payload = await rt.send_json(
                "POST",
                self._url("/v1/messages"),
                credential=cred,
                model=model,
                phase="generate",
                json_body=body,
            )
            return wire.parse_response(payload)

        return await rt.generate(options, call, cancel=cancel)
