"""Shared provider-side error helpers.

Providers attach retry metadata via APIError so callers can decide on retries
from ``kind``/``retry_after_s`` without brittle substring matching.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

import httpx

from llmrelay._http import classify_status, parse_retry_after, transport_error
from llmrelay.errors import APIError, ErrorKind, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Mapping

_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")
_MAX_DETAIL_CHARS = 500

# OpenAI-family error ``type``/``code`` values with dedicated messages.
_OPENAI_ERROR_TYPES: dict[str, tuple[ErrorKind, str]] = {
    "invalid_api_key": (ErrorKind.AUTH, "invalid API key"),
    "insufficient_quota": (ErrorKind.RATE_LIMIT, "quota exceeded"),
    "rate_limit_exceeded": (ErrorKind.RATE_LIMIT, "rate limit exceeded"),
    "model_not_found": (ErrorKind.NOT_FOUND, "model not found"),
    "invalid_request_error": (ErrorKind.INVALID_REQUEST, "invalid request"),
}
# Status-derived kinds that an error body may not replace.
_STICKY_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.RATE_LIMIT})


def _load_json(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None


def _retry_info_seconds(payload: Any) -> float | None:
    """Extract the delay from a Google API-style ``RetryInfo`` error detail.

    Gemini error bodies are shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}

    ``retryDelay`` is a protobuf Duration string (e.g. ``"8s"``,
    ``"8.352104981s"``).
    """
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    details = error.get("details")
    if not isinstance(details, list):
        return None
    for entry in details:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def _error_fields(payload: Any) -> tuple[list[str], str]:
    """Return ``(identifiers, message)`` from the common error envelopes.

    Identifiers are ordered most specific first: OpenAI sends
    ``{"type": "invalid_request_error", "code": "invalid_api_key"}`` for a bad
    key, so ``code`` is consulted before ``type``.
    """
    if not isinstance(payload, dict):
        return [], ""
    error = payload.get("error", payload)
    if isinstance(error, str):
        return [], error
    if not isinstance(error, dict):
        return [], ""
    identifiers = [
        str(error[field])
        for field in ("code", "type", "status")
        if isinstance(error.get(field), str) and error[field]
    ]
    message = error.get("message") or ""
    return identifiers, str(message)


def _openai_override(
    identifiers: list[str], status_kind: ErrorKind
) -> tuple[ErrorKind, str] | None:
    """Kind and summary named by an OpenAI-family error body, if any.

    Auth and rate-limit statuses are never downgraded by the body.
    """
    for ident in identifiers:
        if ident in _OPENAI_ERROR_TYPES:
            kind, summary = _OPENAI_ERROR_TYPES[ident]
            break
    else:
        return None
    if status_kind in _STICKY_KINDS and kind is not status_kind:
        return None
    return kind, summary


def _auth_hint(env_var: str | None, status_code: int, detail: str) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    lower = detail.lower()
    if status_code in {401, 403} or (
        status_code == 400 and ("api key" in lower or "api_key" in lower)
    ):
        target = env_var or "the API key"
        return f"Check credentials/permissions (try setting {target} or api_key)."
    return None


def error_from_response(
    status_code: int,
    body: str,
    *,
    provider: str,
    phase: str,
    headers: Mapping[str, str] | httpx.Headers | None = None,
    env_var: str | None = None,
    openai_family: bool = False,
) -> APIError:
    """Classify a non-2xx response into an APIError.

    429 responses become RateLimitError carrying ``retry_after_s`` (from the
    ``Retry-After`` header or a Google ``RetryInfo`` detail), and the delay is
    also spelled out in the message.
    """
    hdrs = httpx.Headers(headers or {})
    payload = _load_json(body)
    identifiers, err_message = _error_fields(payload)

    kind = classify_status(status_code)
    summary = ""
    override = _openai_override(identifiers, kind) if openai_family else None
    if override is not None:
        kind, summary = override
    detail = err_message or body.strip()[:_MAX_DETAIL_CHARS]

    retry_after_s = parse_retry_after(hdrs.get("retry-after"))
    if retry_after_s is None:
        retry_after_s = _retry_info_seconds(payload)

    msg = f"{provider} {phase} failed (status={status_code})"
    if summary:
        msg = f"{msg}: {summary}"
    if detail and detail != summary:
        msg = f"{msg}: {detail}"
    if retry_after_s is not None and kind is ErrorKind.RATE_LIMIT:
        msg = f"{msg} (retry after {retry_after_s:g}s)"

    rate_limited = status_code == 429 or kind is ErrorKind.RATE_LIMIT
    err_cls: type[APIError] = RateLimitError if rate_limited else APIError
    return err_cls(
        msg,
        kind=kind,
        hint=_auth_hint(env_var, status_code, detail),
        status_code=status_code,
        body=body,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
        request_id=hdrs.get("x-request-id") or hdrs.get("request-id"),
    )


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
) -> APIError:
    """Map anything raised during a provider call into APIError."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        return exc

    if isinstance(exc, httpx.HTTPError):
        return transport_error(exc, provider=provider, phase=phase)

    err = APIError(
        f"{provider} {phase} failed: {exc}",
        kind=ErrorKind.UNKNOWN,
        provider=provider,
        phase=phase,
    )
    err.__cause__ = exc
    return err
