"""llmrelay: one chat-completion API over many LLM providers.

Public API:
    - create_provider(): Build a provider from a ProviderConfig
    - GenerateOptions / Message / Tool: Canonical request types
    - collect_stream(): Drain a completion stream into one message
"""

from __future__ import annotations

import logging

from llmrelay.auth import AuthStatus, OAuthCredential
from llmrelay.config import AuthConfig, ProviderConfig, sanitize_config
from llmrelay.errors import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    CredentialRefreshError,
    ErrorKind,
    InvalidRequestError,
    NoCredentialsError,
    RateLimitError,
    RelayError,
    StreamCancelledError,
    UnsupportedOperationError,
)
from llmrelay.metrics import ProviderMetrics
from llmrelay.providers import Provider, create_provider
from llmrelay.ratelimit import RateLimitInfo
from llmrelay.streaming import ChatStream, collect_stream
from llmrelay.types import (
    AuthMethod,
    Chunk,
    Completion,
    ContentPart,
    GenerateOptions,
    Message,
    ModelInfo,
    ProviderType,
    Tool,
    ToolCall,
    ToolCallFunction,
    ToolChoice,
    ToolFormat,
    Usage,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("llmrelay")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("llmrelay").addHandler(logging.NullHandler())

__all__ = [
    "APIError",
    "AuthConfig",
    "AuthMethod",
    "AuthStatus",
    "AuthenticationError",
    "ChatStream",
    "Chunk",
    "Completion",
    "ConfigurationError",
    "ContentPart",
    "CredentialRefreshError",
    "ErrorKind",
    "GenerateOptions",
    "InvalidRequestError",
    "Message",
    "ModelInfo",
    "NoCredentialsError",
    "OAuthCredential",
    "Provider",
    "ProviderConfig",
    "ProviderMetrics",
    "ProviderType",
    "RateLimitError",
    "RateLimitInfo",
    "RelayError",
    "StreamCancelledError",
    "Tool",
    "ToolCall",
    "ToolCallFunction",
    "ToolChoice",
    "ToolFormat",
    "UnsupportedOperationError",
    "Usage",
    "collect_stream",
    "create_provider",
    "sanitize_config",
]
