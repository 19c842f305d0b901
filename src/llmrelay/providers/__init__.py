"""Provider implementations and the factory keyed on provider type."""

from __future__ import annotations

from typing import TYPE_CHECKING

from llmrelay.errors import ConfigurationError
from llmrelay.types import ProviderType

from .anthropic import AnthropicProvider
from .base import Provider, ProviderCapabilities
from .gemini import GeminiProvider
from .mock import MockProvider
from .openai import OpenAIProvider

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from llmrelay.auth.oauth import TokenRefreshCallback
    from llmrelay.config import ProviderConfig
    from llmrelay.streaming import LineParser

_OPENAI_COMPATIBLE = frozenset(
    {
        ProviderType.OPENAI,
        ProviderType.OPENROUTER,
        ProviderType.CEREBRAS,
        ProviderType.QWEN,
    }
)


def create_provider(
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient | None = None,
    on_token_refresh: TokenRefreshCallback | None = None,
    stream_parser: Callable[[], LineParser] | None = None,
) -> Provider:
    """Build the provider variant for ``config.type``.

    ``client`` replaces the provider's own HTTP client, e.g. one with an
    ``httpx.MockTransport`` in tests. ``stream_parser`` applies to
    OpenAI-compatible types only.
    """
    if config.type in _OPENAI_COMPATIBLE:
        return OpenAIProvider(
            config,
            client=client,
            on_token_refresh=on_token_refresh,
            stream_parser=stream_parser,
        )
    if config.type is ProviderType.ANTHROPIC:
        return AnthropicProvider(
            config, client=client, on_token_refresh=on_token_refresh
        )
    if config.type is ProviderType.GEMINI:
        return GeminiProvider(
            config, client=client, on_token_refresh=on_token_refresh
        )
    if config.type is ProviderType.MOCK:
        return MockProvider(config)
    raise ConfigurationError(f"unsupported provider type: {config.type.value}")


__all__ = [
    "AnthropicProvider",
    "GeminiProvider",
    "MockProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderCapabilities",
    "create_provider",
]
