"""ProviderConfig validation, key resolution, merging and redaction."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import ValidationError
import pytest

from llmrelay.auth import OAuthCredential
from llmrelay.config import AuthConfig, ProviderConfig, sanitize_config
from llmrelay.types import ProviderType

pytestmark = pytest.mark.unit


def test_base_url_and_names_are_normalized() -> None:
    cfg = ProviderConfig(
        type="openai", name=" main ", base_url=" https://api.test/v1/ "
    )
    assert cfg.type is ProviderType.OPENAI
    assert cfg.name == "main"
    assert cfg.base_url == "https://api.test/v1"


def test_display_name_falls_back_to_type() -> None:
    assert ProviderConfig(type="gemini").display_name == "gemini"


@pytest.mark.parametrize(
    "kwargs",
    [{"timeout_s": 0}, {"max_tokens": -1}, {"unknown_field": 1}, {"type": "nope"}],
)
def test_invalid_configs_are_rejected(kwargs: dict) -> None:
    with pytest.raises(ValidationError):
        ProviderConfig(**{"type": "openai", **kwargs})


def test_resolved_api_keys_order_and_dedup() -> None:
    cfg = ProviderConfig(
        type="openai",
        api_key="k1",
        api_keys=["k2", "k1", " "],
        provider_config={"api_keys": ["k3", "k2"]},
    )
    assert cfg.resolved_api_keys() == ["k1", "k2", "k3"]


def test_resolved_api_keys_uses_environment_when_unset(monkeypatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
    cfg = ProviderConfig(type="anthropic", api_keys=["second"])
    assert cfg.resolved_api_keys() == ["env-key", "second"]


def test_custom_env_var_overrides_standard_name(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "standard")
    monkeypatch.setenv("MY_GATEWAY_KEY", "custom")
    cfg = ProviderConfig(type="openai", api_key_env="MY_GATEWAY_KEY")
    assert cfg.resolved_api_keys() == ["custom"]


def test_merged_keeps_explicit_capability_flags() -> None:
    base = ProviderConfig(type="openai", supports_streaming=False, default_model="a")
    merged = base.merged(ProviderConfig(type="openai", default_model="b"))
    assert merged.default_model == "b"
    assert merged.supports_streaming is False

    flipped = merged.merged(ProviderConfig(type="openai", supports_streaming=True))
    assert flipped.supports_streaming is True
    assert flipped.default_model == "b"


def test_str_never_contains_secrets() -> None:
    cfg = ProviderConfig(type="openai", api_key="sk-secret", api_keys=["sk-other"])
    assert "sk-secret" not in str(cfg)
    assert "sk-other" not in repr(cfg)
    assert "api_keys=2" in str(cfg)


def test_sanitize_config_redacts_secrets() -> None:
    cred = OAuthCredential(
        id="acct",
        access_token="at-secret",
        refresh_token="rt-secret",
        expires_at=datetime(2030, 1, 1, tzinfo=UTC),
    )
    cfg = ProviderConfig(
        type="anthropic",
        api_key="sk-secret",
        oauth_credentials=[cred],
        provider_config={"client_secret": "cs", "region": "us", "api_keys": ["x"]},
    )
    data = sanitize_config(cfg)
    dumped = repr(data)
    for secret in ("sk-secret", "at-secret", "rt-secret", "'cs'", "'x'"):
        assert secret not in dumped
    assert data["provider_config"]["region"] == "us"
    assert data["oauth_credentials"][0]["id"] == "acct"


def test_auth_config_repr_hides_key() -> None:
    auth = AuthConfig(method="api_key", api_key="sk-live")
    assert "sk-live" not in repr(auth)
