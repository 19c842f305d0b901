"""Provider configuration: validated pydantic schema plus auth inputs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from llmrelay.auth.credentials import OAuthCredential
from llmrelay.types import AuthMethod, ProviderType, ToolFormat

load_dotenv()

# Provider-specific API key environment variable names
API_KEY_ENV_VARS: dict[ProviderType, str] = {
    ProviderType.OPENAI: "OPENAI_API_KEY",
    ProviderType.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderType.GEMINI: "GEMINI_API_KEY",
    ProviderType.QWEN: "QWEN_API_KEY",
    ProviderType.CEREBRAS: "CEREBRAS_API_KEY",
    ProviderType.OPENROUTER: "OPENROUTER_API_KEY",
}

# Field-name tokens treated as secrets when dumping configuration.
SENSITIVE_KEYS = {
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "passwd",
    "access_key",
    "client_secret",
}

_REDACTED = "[REDACTED]"


def is_sensitive_field_key(name: str) -> bool:
    """Return True if a field name is considered sensitive for logging."""
    lower = name.lower()
    return any(token in lower for token in SENSITIVE_KEYS)


class ProviderConfig(BaseModel):
    """Configuration for one provider instance.

    Capability flags default to None, meaning "use the provider's default";
    an explicit value always wins and survives ``merged`` reconfiguration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: ProviderType
    name: str = ""
    api_key: SecretStr | None = None
    #: Secondary keys, tried after ``api_key`` in order.
    api_keys: list[SecretStr] = Field(default_factory=list)
    #: Overrides the provider's standard API-key environment variable.
    api_key_env: str | None = None
    base_url: str = ""
    default_model: str = ""
    description: str = ""
    timeout_s: float = Field(default=60.0, gt=0)
    max_tokens: int = Field(default=0, ge=0)
    supports_streaming: bool | None = None
    supports_tool_calling: bool | None = None
    supports_responses_api: bool | None = None
    tool_format: ToolFormat | None = None
    oauth_credentials: list[OAuthCredential] = Field(default_factory=list)
    provider_config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_url", "default_model", "name", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("base_url")
    @classmethod
    def _trim_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def display_name(self) -> str:
        return self.name or self.type.value

    def resolved_api_keys(self) -> list[str]:
        """All configured API keys in order, without duplicates.

        Order: ``api_key`` (or the environment fallback when unset), then
        ``api_keys``, then ``provider_config["api_keys"]``.
        """
        keys: list[str] = []
        primary = self.api_key.get_secret_value() if self.api_key else None
        if not primary:
            env_var = self.api_key_env or API_KEY_ENV_VARS.get(self.type)
            primary = os.environ.get(env_var) if env_var else None
        if primary:
            keys.append(primary)
        keys.extend(k.get_secret_value() for k in self.api_keys)
        extra = self.provider_config.get("api_keys")
        if isinstance(extra, (list, tuple)):
            keys.extend(str(k) for k in extra)
        seen: set[str] = set()
        ordered: list[str] = []
        for key in keys:
            key = key.strip()
            if key and key not in seen:
                seen.add(key)
                ordered.append(key)
        return ordered

    def merged(self, update: ProviderConfig) -> ProviderConfig:
        """Overlay only the fields ``update`` set explicitly."""
        changes = {name: getattr(update, name) for name in update.model_fields_set}
        return self.model_copy(update=changes)

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"ProviderConfig(type={self.type.value!r}, name={self.display_name!r}, "
            f"base_url={self.base_url!r}, default_model={self.default_model!r}, "
            f"api_keys={len(self.resolved_api_keys())}, "
            f"oauth_credentials={len(self.oauth_credentials)})"
        )

    __repr__ = __str__


@dataclass(frozen=True)
class AuthConfig:
    """Input to ``Provider.authenticate``."""

    method: AuthMethod | str
    api_key: str = ""
    base_url: str = ""
    default_model: str = ""

    def __repr__(self) -> str:
        api_key = _REDACTED if self.api_key else ""
        return (
            f"AuthConfig(method={self.method!r}, api_key={api_key!r}, "
            f"base_url={self.base_url!r}, default_model={self.default_model!r})"
        )


def _redact(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _redact(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple)) and is_sensitive_field_key(key):
        return [_REDACTED for _ in value]
    if is_sensitive_field_key(key) and value:
        return _REDACTED
    return value


def sanitize_config(config: ProviderConfig) -> dict[str, Any]:
    """Redacted dict for structured logging (never contains secrets)."""
    data: dict[str, Any] = {
        "type": config.type.value,
        "name": config.name,
        "api_key": _REDACTED if config.api_key else None,
        "api_keys": [_REDACTED for _ in config.api_keys],
        "api_key_env": config.api_key_env,
        "base_url": config.base_url,
        "default_model": config.default_model,
        "description": config.description,
        "timeout_s": config.timeout_s,
        "max_tokens": config.max_tokens,
        "supports_streaming": config.supports_streaming,
        "supports_tool_calling": config.supports_tool_calling,
        "supports_responses_api": config.supports_responses_api,
        "tool_format": config.tool_format.value if config.tool_format else None,
        "provider_config": _redact("provider_config", config.provider_config),
    }
    creds = []
    for cred in config.oauth_credentials:
        raw = asdict(cred)
        creds.append({k: _redact(k, v) for k, v in raw.items()})
    data["oauth_credentials"] = creds
    return data
