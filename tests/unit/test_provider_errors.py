"""Mapping provider HTTP failures onto classified APIErrors."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from llmrelay.errors import APIError, ErrorKind, RateLimitError
from llmrelay.providers._errors import error_from_response, wrap_provider_error

pytestmark = pytest.mark.unit


def _body(err_type: str, message: str = "details") -> str:
    return json.dumps({"error": {"type": err_type, "message": message}})


def test_status_drives_kind_and_message() -> None:
    err = error_from_response(
        503, "upstream unavailable", provider="cerebras", phase="generate"
    )
    assert err.kind is ErrorKind.SERVER
    assert err.retryable is True
    assert str(err) == (
        "cerebras generate failed (status=503): upstream unavailable"
    )
    assert err.body == "upstream unavailable"


def test_auth_errors_name_the_env_var() -> None:
    err = error_from_response(
        401,
        _body("authentication_error", "invalid x-api-key"),
        provider="anthropic",
        phase="generate",
        env_var="ANTHROPIC_API_KEY",
    )
    assert err.kind is ErrorKind.AUTH
    assert "ANTHROPIC_API_KEY" in err.hint
    assert "invalid x-api-key" in str(err)


def test_rate_limit_carries_retry_after_header() -> None:
    err = error_from_response(
        429,
        _body("rate_limit_error", "slow down"),
        provider="anthropic",
        phase="generate",
        headers={"retry-after": "3", "request-id": "req_9"},
    )
    assert isinstance(err, RateLimitError)
    assert err.retry_after_s == 3.0
    assert "(retry after 3s)" in str(err)
    assert err.request_id == "req_9"


def test_google_retry_info_detail_is_used_without_header() -> None:
    body = json.dumps(
        {
            "error": {
                "code": 429,
                "status": "RESOURCE_EXHAUSTED",
                "message": "quota",
                "details": [
                    {
                        "@type": "type.googleapis.com/google.rpc.RetryInfo",
                        "retryDelay": "8.5s",
                    }
                ],
            }
        }
    )
    err = error_from_response(429, body, provider="gemini", phase="generate")
    assert err.retry_after_s == 8.5


@pytest.mark.parametrize(
    ("err_type", "kind"),
    [
        ("invalid_api_key", ErrorKind.AUTH),
        ("insufficient_quota", ErrorKind.RATE_LIMIT),
        ("rate_limit_exceeded", ErrorKind.RATE_LIMIT),
        ("model_not_found", ErrorKind.NOT_FOUND),
        ("invalid_request_error", ErrorKind.INVALID_REQUEST),
    ],
)
def test_openai_family_error_types_override_status(
    err_type: str, kind: ErrorKind
) -> None:
    err = error_from_response(
        400, _body(err_type), provider="openai", phase="generate", openai_family=True
    )
    assert err.kind is kind
    if kind is ErrorKind.RATE_LIMIT:
        assert isinstance(err, RateLimitError)


def test_openai_bad_key_body_classifies_as_auth() -> None:
    """OpenAI names a bad key in ``code`` and a generic ``type``."""
    body = json.dumps(
        {
            "error": {
                "message": "Incorrect API key provided: sk-bad.",
                "type": "invalid_request_error",
                "param": None,
                "code": "invalid_api_key",
            }
        }
    )
    err = error_from_response(
        401, body, provider="openai", phase="generate", openai_family=True
    )
    assert err.kind is ErrorKind.AUTH
    assert "invalid API key" in str(err)


@pytest.mark.parametrize(
    ("status", "kind"),
    [(401, ErrorKind.AUTH), (403, ErrorKind.AUTH), (429, ErrorKind.RATE_LIMIT)],
)
def test_body_type_never_downgrades_auth_or_rate_limit_status(
    status: int, kind: ErrorKind
) -> None:
    err = error_from_response(
        status,
        _body("invalid_request_error"),
        provider="openai",
        phase="generate",
        openai_family=True,
    )
    assert err.kind is kind


def test_error_types_ignored_outside_openai_family() -> None:
    err = error_from_response(
        400, _body("insufficient_quota"), provider="gemini", phase="generate"
    )
    assert err.kind is ErrorKind.INVALID_REQUEST


def test_long_non_json_bodies_are_truncated_in_message() -> None:
    err = error_from_response(500, "x" * 2000, provider="p", phase="generate")
    assert len(str(err)) < 600
    assert err.body == "x" * 2000


def test_wrap_provider_error_fills_missing_context() -> None:
    original = APIError("bad", kind=ErrorKind.SERVER)
    wrapped = wrap_provider_error(original, provider="openai", phase="generate")
    assert wrapped is original
    assert (wrapped.provider, wrapped.phase) == ("openai", "generate")


def test_wrap_provider_error_maps_transport_and_unknown_errors() -> None:
    request = httpx.Request("GET", "https://api.test")
    timeout = wrap_provider_error(
        httpx.ConnectTimeout("slow", request=request), provider="p", phase="list"
    )
    assert timeout.kind is ErrorKind.TIMEOUT

    other = wrap_provider_error(ValueError("junk"), provider="p", phase="list")
    assert other.kind is ErrorKind.UNKNOWN
    assert isinstance(other.__cause__, ValueError)


def test_wrap_provider_error_reraises_cancellation() -> None:
    with pytest.raises(asyncio.CancelledError):
        wrap_provider_error(asyncio.CancelledError(), provider="p", phase="x")
