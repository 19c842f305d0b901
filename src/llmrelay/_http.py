"""Small HTTP helpers shared by error mapping and rate-limit parsing.

Kept free of package imports beyond ``errors`` to avoid import cycles.
"""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
import re

import httpx

from llmrelay.errors import APIError, ErrorKind

# Status codes that map to retryable kinds even outside the 5xx range.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.AUTH,
    403: ErrorKind.AUTH,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMIT,
}

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|h|m|s)")
_DURATION_UNITS_S = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    kind = _STATUS_KINDS.get(status_code)
    if kind is not None:
        return kind
    if 500 <= status_code <= 599:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_duration(value: str) -> float | None:
    """Parse a compound duration string such as ``"1m30s"`` or ``"250ms"``.

    Returns seconds, or None when the string is not a duration.
    """
    text = value.strip()
    if not text:
        return None
    pos = 0
    total = 0.0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            return None
        total += float(m.group(1)) * _DURATION_UNITS_S[m.group(2)]
        pos = m.end()
    if pos != len(text):
        return None
    return total


def parse_retry_after(
    value: str | None, *, now: datetime | None = None
) -> float | None:
    """Parse a ``Retry-After`` header as seconds (delta-seconds or HTTP-date)."""
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    delta = (when - (now or utcnow())).total_seconds()
    return max(delta, 0.0)


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def transport_error(
    exc: httpx.HTTPError, *, provider: str | None = None, phase: str | None = None
) -> APIError:
    """Classify an httpx transport failure (no HTTP response was read)."""
    kind = (
        ErrorKind.TIMEOUT
        if isinstance(exc, httpx.TimeoutException)
        else ErrorKind.NETWORK
    )
    where = f"{provider} {phase}" if provider and phase else provider or "request"
    err = APIError(
        f"{where} failed: {type(exc).__name__}: {exc}",
        kind=kind,
        provider=provider,
        phase=phase,
    )
    err.__cause__ = exc
    return err
