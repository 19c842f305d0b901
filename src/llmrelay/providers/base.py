"""Provider protocol: the surface every backend exposes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    import asyncio

    from llmrelay.auth import AuthStatus, OAuthCredential
    from llmrelay.config import AuthConfig, ProviderConfig
    from llmrelay.metrics import ProviderMetrics
    from llmrelay.ratelimit import RateLimitInfo
    from llmrelay.streaming import ChatStream
    from llmrelay.types import GenerateOptions, ModelInfo, ProviderType, ToolFormat


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    streaming: bool = True
    tool_calling: bool = True
    responses_api: bool = False
    oauth: bool = False
    model_listing: bool = True


@runtime_checkable
class Provider(Protocol):
    """Chat-completion provider."""

    @property
    def name(self) -> str: ...

    @property
    def type(self) -> ProviderType: ...

    @property
    def description(self) -> str: ...

    @property
    def capabilities(self) -> ProviderCapabilities: ...

    async def get_models(self) -> list[ModelInfo]:
        """List models the provider advertises."""
        ...

    def get_default_model(self) -> str: ...

    async def generate_chat_completion(
        self,
        options: GenerateOptions,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ChatStream:
        """Run one chat completion.

        Non-streaming requests return a one-chunk stream carrying the full
        message. Errors before the first byte are raised; errors afterwards
        surface through the stream.
        """
        ...

    async def invoke_server_tool(self, name: str, params: dict[str, Any]) -> Any: ...

    async def authenticate(self, auth_config: AuthConfig) -> None: ...

    def is_authenticated(self) -> bool: ...

    async def logout(self) -> None: ...

    def configure(self, config: ProviderConfig) -> None: ...

    def supports_streaming(self) -> bool: ...

    def supports_tool_calling(self) -> bool: ...

    def supports_responses_api(self) -> bool: ...

    def get_tool_format(self) -> ToolFormat: ...

    async def refresh_all_oauth_tokens(self) -> list[OAuthCredential]: ...

    def get_metrics(self) -> ProviderMetrics: ...

    def get_rate_limit_info(self, model: str) -> RateLimitInfo | None: ...

    def auth_status(self) -> AuthStatus: ...

    async def aclose(self) -> None: ...
