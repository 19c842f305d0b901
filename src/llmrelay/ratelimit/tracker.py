"""Per-model view of provider quotas, fed from response headers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime, timedelta
import logging
import threading
from typing import Any

from llmrelay._http import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_WAIT_S = 10.0
DEFAULT_THROTTLE_FRACTION = 0.2

# (limit, remaining) pairs clamped so that 0 <= remaining <= limit.
_QUOTA_PAIRS = (
    ("requests_limit", "requests_remaining"),
    ("tokens_limit", "tokens_remaining"),
    ("input_tokens_limit", "input_tokens_remaining"),
    ("output_tokens_limit", "output_tokens_remaining"),
    ("daily_requests_limit", "daily_requests_remaining"),
    ("credits_limit", "credits_remaining"),
)
_RESET_FIELDS = (
    "requests_reset_at",
    "tokens_reset_at",
    "input_tokens_reset_at",
    "output_tokens_reset_at",
    "daily_requests_reset_at",
)


@dataclass(frozen=True)
class RateLimitInfo:
    """Uniform rate-limit record for one (provider, model).

    ``None`` means the provider did not report that dimension.
    """

    provider: str = ""
    model: str = ""
    observed_at: datetime = field(default_factory=utcnow)

    requests_limit: int | None = None
    requests_remaining: int | None = None
    requests_reset_at: datetime | None = None
    tokens_limit: int | None = None
    tokens_remaining: int | None = None
    tokens_reset_at: datetime | None = None
    input_tokens_limit: int | None = None
    input_tokens_remaining: int | None = None
    input_tokens_reset_at: datetime | None = None
    output_tokens_limit: int | None = None
    output_tokens_remaining: int | None = None
    output_tokens_reset_at: datetime | None = None
    daily_requests_limit: int | None = None
    daily_requests_remaining: int | None = None
    daily_requests_reset_at: datetime | None = None
    credits_limit: float | None = None
    credits_remaining: float | None = None
    is_free_tier: bool = False

    request_id: str = ""
    retry_after_s: float | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for limit_name, remaining_name in _QUOTA_PAIRS:
            limit = getattr(self, limit_name)
            remaining = getattr(self, remaining_name)
            if limit is not None and limit < 0:
                object.__setattr__(self, limit_name, 0)
                limit = 0
            if remaining is None:
                continue
            remaining = max(remaining, 0)
            if limit is not None:
                remaining = min(remaining, limit)
            object.__setattr__(self, remaining_name, remaining)
        for name in ("observed_at", *_RESET_FIELDS):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=UTC))
        if self.retry_after_s is not None and self.retry_after_s < 0:
            object.__setattr__(self, "retry_after_s", 0.0)

    def reset_times(self) -> list[datetime]:
        return [t for t in (getattr(self, n) for n in _RESET_FIELDS) if t is not None]

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly dump for logging."""
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[f.name] = value
        return out


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class RateLimitTracker:
    """In-memory quota state per model for one provider instance.

    Reads and writes go through one lock; callers only ever see frozen
    ``RateLimitInfo`` values. Waits are cooperative and capped at
    ``max_wait_s``.
    """

    def __init__(
        self,
        *,
        max_wait_s: float = DEFAULT_MAX_WAIT_S,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._info: dict[str, RateLimitInfo] = {}
        self._retry_until: dict[str, datetime] = {}
        self.last_update: datetime | None = None

    def update(self, info: RateLimitInfo | None) -> RateLimitInfo | None:
        """Merge a new observation; reset times never move backwards."""
        if info is None:
            return None
        with self._lock:
            previous = self._info.get(info.model)
            merged = info
            if previous is not None:
                merged = replace(
                    info,
                    **{
                        name: _later(getattr(previous, name), getattr(info, name))
                        for name in _RESET_FIELDS
                    },
                )
            self._info[info.model] = merged
            if info.retry_after_s is not None:
                until = info.observed_at + timedelta(seconds=info.retry_after_s)
                self._retry_until[info.model] = _later(
                    self._retry_until.get(info.model), until
                )
            self.last_update = self._clock()
        return merged

    def record_retry_after(
        self, model: str, seconds: float, *, provider: str = ""
    ) -> None:
        """Remember a server-mandated pause for ``model``."""
        self.update(
            RateLimitInfo(
                provider=provider,
                model=model,
                observed_at=self._clock(),
                retry_after_s=seconds,
            )
        )

    def get(self, model: str) -> RateLimitInfo | None:
        with self._lock:
            return self._info.get(model)

    def snapshot(self) -> dict[str, RateLimitInfo]:
        with self._lock:
            return dict(self._info)

    def clear(self, model: str | None = None) -> None:
        with self._lock:
            if model is None:
                self._info.clear()
                self._retry_until.clear()
            else:
                self._info.pop(model, None)
                self._retry_until.pop(model, None)

    def can_make_request(self, model: str, planned_tokens: int = 0) -> bool:
        now = self._clock()
        with self._lock:
            info = self._info.get(model)
            retry_until = self._retry_until.get(model)
        if retry_until is not None and now < retry_until:
            return False
        if info is None:
            return True
        return _within_limits(info, now, planned_tokens)

    def wait_time(self, model: str, planned_tokens: int = 0) -> float:
        """Seconds until a request for ``model`` should be allowed again.

        A pending Retry-After wins; otherwise, when a quota is exhausted, the
        nearest future reset. Zero when nothing blocks.
        """
        now = self._clock()
        with self._lock:
            info = self._info.get(model)
            retry_until = self._retry_until.get(model)
        if retry_until is not None and now < retry_until:
            return (retry_until - now).total_seconds()
        if info is None or _within_limits(info, now, planned_tokens):
            return 0.0
        upcoming = [t for t in info.reset_times() if t > now]
        if not upcoming:
            return 0.0
        return (min(upcoming) - now).total_seconds()

    async def check_and_wait(self, model: str, planned_tokens: int = 0) -> bool:
        """Block until ``model`` may be called, for at most ``max_wait_s``.

        Always returns True; cancellation of the awaiting task propagates.
        """
        if self.can_make_request(model, planned_tokens):
            return True
        wait = self.wait_time(model, planned_tokens)
        if wait <= 0:
            return True
        bounded = min(wait, self.max_wait_s)
        logger.warning(
            "rate limit reached for %s; waiting %.2fs (needed %.2fs)",
            model,
            bounded,
            wait,
        )
        await self._sleep(bounded)
        return True

    def should_throttle(
        self, model: str, fraction: float = DEFAULT_THROTTLE_FRACTION
    ) -> bool:
        """True when any reported quota has ``remaining / limit <= fraction``."""
        if not 0 <= fraction <= 1:
            fraction = DEFAULT_THROTTLE_FRACTION
        info = self.get(model)
        if info is None:
            return False
        for limit_name, remaining_name in _QUOTA_PAIRS:
            limit = getattr(info, limit_name)
            remaining = getattr(info, remaining_name)
            if limit and remaining is not None and remaining / limit <= fraction:
                return True
        return False


def _active(reset_at: datetime | None, now: datetime) -> bool:
    """A window with no known reset, or one that has not reset yet."""
    return reset_at is None or now < reset_at


def _within_limits(info: RateLimitInfo, now: datetime, planned_tokens: int) -> bool:
    if (
        info.requests_remaining is not None
        and info.requests_remaining <= 0
        and _active(info.requests_reset_at, now)
    ):
        return False
    if planned_tokens > 0:
        for remaining, reset_at in (
            (info.tokens_remaining, info.tokens_reset_at),
            (info.input_tokens_remaining, info.input_tokens_reset_at),
        ):
            if (
                remaining is not None
                and remaining < planned_tokens
                and _active(reset_at, now)
            ):
                return False
    if (
        info.daily_requests_remaining is not None
        and info.daily_requests_remaining <= 0
        and _active(info.daily_requests_reset_at, now)
    ):
        return False
    return not (
        info.credits_limit
        and info.credits_remaining is not None
        and info.credits_remaining <= 0
    )
