"""Per-provider rate-limit header parsers.

Each parser maps a response's headers to a ``RateLimitInfo`` or returns None
when the response carries no rate-limit information at all.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from llmrelay._http import parse_duration, parse_retry_after, parse_rfc3339, utcnow
from llmrelay.ratelimit.tracker import RateLimitInfo
from llmrelay.types import ProviderType

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    HeaderParser = Callable[..., RateLimitInfo | None]

# Integer resets above this are unix timestamps, below it relative seconds.
_UNIX_TIMESTAMP_FLOOR = 1_000_000_000
_FREE_TIER_CREDIT_CEILING = 10.0


def _headers(headers: Mapping[str, str] | httpx.Headers) -> httpx.Headers:
    return headers if isinstance(headers, httpx.Headers) else httpx.Headers(headers)


def _int(headers: httpx.Headers, name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _float(headers: httpx.Headers, name: str) -> float | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


def _after(now: datetime, seconds: float | None) -> datetime | None:
    return None if seconds is None else now + timedelta(seconds=seconds)


def _has_values(fields: dict[str, Any]) -> bool:
    return any(v is not None and v != "" for v in fields.values())


def parse_openai_headers(
    headers: Mapping[str, str] | httpx.Headers,
    model: str,
    *,
    now: datetime | None = None,
    provider: str = "openai",
) -> RateLimitInfo | None:
    """``x-ratelimit-{limit,remaining,reset}-{requests,tokens}`` headers.

    Resets are duration strings such as ``"1m30s"``.
    """
    h = _headers(headers)
    now = now or utcnow()
    fields: dict[str, Any] = {
        "requests_limit": _int(h, "x-ratelimit-limit-requests"),
        "requests_remaining": _int(h, "x-ratelimit-remaining-requests"),
        "requests_reset_at": _after(
            now, parse_duration(h.get("x-ratelimit-reset-requests", ""))
        ),
        "tokens_limit": _int(h, "x-ratelimit-limit-tokens"),
        "tokens_remaining": _int(h, "x-ratelimit-remaining-tokens"),
        "tokens_reset_at": _after(
            now, parse_duration(h.get("x-ratelimit-reset-tokens", ""))
        ),
        "retry_after_s": parse_retry_after(h.get("retry-after"), now=now),
    }
    if not _has_values(fields):
        return None
    return RateLimitInfo(
        provider=provider,
        model=model,
        observed_at=now,
        request_id=h.get("x-request-id", ""),
        **fields,
    )


def parse_anthropic_headers(
    headers: Mapping[str, str] | httpx.Headers,
    model: str,
    *,
    now: datetime | None = None,
) -> RateLimitInfo | None:
    """``anthropic-ratelimit-*`` headers; resets are RFC 3339 timestamps."""
    h = _headers(headers)
    now = now or utcnow()
    fields: dict[str, Any] = {}
    for dimension, prefix in (
        ("requests", "requests"),
        ("tokens", "tokens"),
        ("input_tokens", "input-tokens"),
        ("output_tokens", "output-tokens"),
    ):
        base = f"anthropic-ratelimit-{prefix}"
        fields[f"{dimension}_limit"] = _int(h, f"{base}-limit")
        fields[f"{dimension}_remaining"] = _int(h, f"{base}-remaining")
        fields[f"{dimension}_reset_at"] = parse_rfc3339(h.get(f"{base}-reset"))
    fields["retry_after_s"] = parse_retry_after(h.get("retry-after"), now=now)
    if not _has_values(fields):
        return None
    return RateLimitInfo(
        provider="anthropic",
        model=model,
        observed_at=now,
        request_id=h.get("request-id", ""),
        **fields,
    )


def parse_cerebras_headers(
    headers: Mapping[str, str] | httpx.Headers,
    model: str,
    *,
    now: datetime | None = None,
) -> RateLimitInfo | None:
    """Per-minute and per-day windows with float-seconds resets."""
    h = _headers(headers)
    now = now or utcnow()
    fields: dict[str, Any] = {}
    for dimension, suffix in (
        ("requests", "requests-minute"),
        ("tokens", "tokens-minute"),
        ("daily_requests", "requests-day"),
    ):
        fields[f"{dimension}_limit"] = _int(h, f"x-ratelimit-limit-{suffix}")
        fields[f"{dimension}_remaining"] = _int(h, f"x-ratelimit-remaining-{suffix}")
        fields[f"{dimension}_reset_at"] = _after(
            now, _float(h, f"x-ratelimit-reset-{suffix}")
        )
    fields["retry_after_s"] = parse_retry_after(h.get("retry-after"), now=now)
    custom = {
        key: h[header]
        for key, header in (
            ("request_id", "cerebras-request-id"),
            ("processing_time", "cerebras-processing-time"),
            ("region", "cerebras-region"),
        )
        if header in h
    }
    if not _has_values(fields) and not custom:
        return None
    return RateLimitInfo(
        provider="cerebras",
        model=model,
        observed_at=now,
        request_id=custom.get("request_id", ""),
        custom_data=custom,
        **fields,
    )


def parse_gemini_headers(
    headers: Mapping[str, str] | httpx.Headers,
    model: str,
    *,
    now: datetime | None = None,
) -> RateLimitInfo | None:
    """Gemini publishes no quotas; only ``Retry-After`` on 429 is honored."""
    h = _headers(headers)
    now = now or utcnow()
    retry_after = parse_retry_after(h.get("retry-after"), now=now)
    if retry_after is None:
        return None
    return RateLimitInfo(
        provider="gemini",
        model=model,
        observed_at=now,
        retry_after_s=retry_after,
        request_id=h.get("x-request-id", ""),
    )


def parse_openrouter_headers(
    headers: Mapping[str, str] | httpx.Headers,
    model: str,
    *,
    now: datetime | None = None,
) -> RateLimitInfo | None:
    """Credits-style limits with an epoch-millisecond reset."""
    h = _headers(headers)
    now = now or utcnow()
    fields: dict[str, Any] = {}

    limit = _float(h, "x-ratelimit-limit")
    remaining = _float(h, "x-ratelimit-remaining")
    fields["credits_limit"] = limit
    fields["credits_remaining"] = remaining
    # Whole numbers double as request counts.
    if limit is not None and limit.is_integer():
        fields["requests_limit"] = int(limit)
    if remaining is not None and remaining.is_integer():
        fields["requests_remaining"] = int(remaining)

    reset_ms = _int(h, "x-ratelimit-reset")
    if reset_ms is not None:
        reset_at = datetime.fromtimestamp(reset_ms / 1000, tz=UTC)
        fields["requests_reset_at"] = reset_at
        fields["tokens_reset_at"] = reset_at

    requests = _int(h, "x-ratelimit-requests")
    if requests is not None:
        fields["requests_limit"] = requests
    fields["tokens_limit"] = _int(h, "x-ratelimit-tokens")
    fields["retry_after_s"] = parse_retry_after(h.get("retry-after"), now=now)
    if not _has_values(fields):
        return None

    free_tier = limit is not None and 0 < limit <= _FREE_TIER_CREDIT_CEILING
    explicit = h.get("x-ratelimit-free-tier")
    if explicit is not None and explicit.strip().lower() in ("true", "false", "1", "0"):
        free_tier = explicit.strip().lower() in ("true", "1")
    return RateLimitInfo(
        provider="openrouter",
        model=model,
        observed_at=now,
        is_free_tier=free_tier,
        request_id=h.get("x-request-id", ""),
        **fields,
    )


def parse_reset_time(
    value: str | None, *, now: datetime | None = None
) -> datetime | None:
    """Parse a reset given as a duration, seconds, a unix time or RFC 3339."""
    if not value:
        return None
    raw = value.strip()
    now = now or utcnow()
    seconds = parse_duration(raw)
    if seconds is not None:
        return now + timedelta(seconds=seconds)
    try:
        number = int(raw)
    except ValueError:
        return parse_rfc3339(raw)
    if number < _UNIX_TIMESTAMP_FLOOR:
        return now + timedelta(seconds=number)
    return datetime.fromtimestamp(number, tz=UTC)


def parse_qwen_headers(
    headers: Mapping[str, str] | httpx.Headers,
    model: str,
    *,
    now: datetime | None = None,
) -> RateLimitInfo | None:
    """OpenAI-style headers with ``qwen-`` and DashScope fallbacks.

    Every recognized header is also kept verbatim in ``custom_data``.
    """
    h = _headers(headers)
    now = now or utcnow()
    custom: dict[str, Any] = {}
    fields: dict[str, Any] = {}

    for dimension in ("requests", "tokens"):
        for prefix in ("x-ratelimit", "qwen-ratelimit"):
            limit = _int(h, f"{prefix}-limit-{dimension}")
            remaining = _int(h, f"{prefix}-remaining-{dimension}")
            reset = h.get(f"{prefix}-reset-{dimension}")
            for suffix, value in (
                ("limit", limit),
                ("remaining", remaining),
            ):
                if value is not None:
                    custom[f"{prefix}-{suffix}-{dimension}"] = h[
                        f"{prefix}-{suffix}-{dimension}"
                    ]
                    fields.setdefault(f"{dimension}_{suffix}", value)
            if reset is not None:
                custom[f"{prefix}-reset-{dimension}"] = reset
                reset_at = parse_reset_time(reset, now=now)
                if reset_at is not None:
                    fields.setdefault(f"{dimension}_reset_at", reset_at)

    for key, value in h.multi_items():
        lower = key.lower()
        if not lower.startswith(("dashscope-ratelimit-", "x-dashscope-ratelimit-")):
            continue
        custom[lower] = value
        if not lower.endswith(("-requests", "-tokens")):
            continue
        try:
            number = int(value)
        except ValueError:
            continue
        dimension = "requests" if lower.endswith("-requests") else "tokens"
        if "-limit-" in lower:
            fields.setdefault(f"{dimension}_limit", number)
        elif "-remaining-" in lower:
            fields.setdefault(f"{dimension}_remaining", number)

    retry_after = h.get("retry-after")
    fields["retry_after_s"] = parse_retry_after(retry_after, now=now)
    if fields["retry_after_s"] is not None:
        custom["retry-after"] = retry_after

    request_id = h.get("x-request-id") or h.get("qwen-request-id") or ""
    for header in ("x-request-id", "qwen-request-id"):
        if header in h:
            custom[header] = h[header]
    for header in ("req-cost-time", "req-arrive-time", "resp-start-time"):
        if header in h:
            custom[header] = h[header]
    cost = _int(h, "req-cost-time")
    if cost is not None:
        custom["req-cost-time-ms"] = cost
    for key, value in h.multi_items():
        lower = key.lower()
        if lower.startswith("qwen-") and lower not in custom:
            custom[lower] = value

    if not _has_values(fields) and not custom:
        return None
    return RateLimitInfo(
        provider="qwen",
        model=model,
        observed_at=now,
        request_id=request_id,
        custom_data=custom,
        **fields,
    )


_PARSERS: dict[ProviderType, HeaderParser] = {
    ProviderType.OPENAI: parse_openai_headers,
    ProviderType.ANTHROPIC: parse_anthropic_headers,
    ProviderType.CEREBRAS: parse_cerebras_headers,
    ProviderType.GEMINI: parse_gemini_headers,
    ProviderType.OPENROUTER: parse_openrouter_headers,
    ProviderType.QWEN: parse_qwen_headers,
}


def parser_for(provider_type: ProviderType) -> HeaderParser | None:
    """The header parser for a provider type, or None when it has none."""
    return _PARSERS.get(provider_type)
