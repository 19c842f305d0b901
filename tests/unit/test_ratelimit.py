"""Rate-limit tracking, header parsing and the client-side token bucket."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from llmrelay.errors import RateLimitError
from llmrelay.ratelimit import (
    ClientRateLimiter,
    RateLimitInfo,
    RateLimitTracker,
    parser_for,
)
from llmrelay.ratelimit.parsers import (
    parse_anthropic_headers,
    parse_cerebras_headers,
    parse_gemini_headers,
    parse_openai_headers,
    parse_openrouter_headers,
    parse_qwen_headers,
    parse_reset_time,
)
from llmrelay.types import ProviderType

pytestmark = pytest.mark.unit

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Settable wall clock plus a sleep that advances it."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self) -> None:
        self.t = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


# =============================================================================
# RateLimitInfo
# =============================================================================


def test_info_clamps_remaining_into_limit() -> None:
    info = RateLimitInfo(
        requests_limit=10,
        requests_remaining=25,
        tokens_limit=100,
        tokens_remaining=-4,
        retry_after_s=-1,
    )
    assert info.requests_remaining == 10
    assert info.tokens_remaining == 0
    assert info.retry_after_s == 0.0


def test_info_to_dict_is_json_friendly() -> None:
    data = RateLimitInfo(model="m", observed_at=NOW, requests_limit=5).to_dict()
    assert data["observed_at"] == NOW.isoformat()
    assert data["requests_limit"] == 5


# =============================================================================
# Tracker
# =============================================================================


def test_retry_after_drives_wait_time() -> None:
    clock = FakeClock()
    tracker = RateLimitTracker(clock=clock)
    tracker.record_retry_after("gemini-2.5-flash", 2.0)

    assert tracker.can_make_request("gemini-2.5-flash") is False
    assert tracker.wait_time("gemini-2.5-flash") == pytest.approx(2.0, abs=0.05)
    assert tracker.wait_time("other-model") == 0.0

    clock.now += timedelta(seconds=2.5)
    assert tracker.can_make_request("gemini-2.5-flash") is True


def test_exhausted_quota_waits_for_nearest_reset() -> None:
    clock = FakeClock()
    tracker = RateLimitTracker(clock=clock)
    tracker.update(
        RateLimitInfo(
            model="m",
            observed_at=NOW,
            requests_limit=10,
            requests_remaining=0,
            requests_reset_at=NOW + timedelta(seconds=5),
            tokens_limit=1000,
            tokens_remaining=50,
            tokens_reset_at=NOW + timedelta(seconds=30),
        )
    )
    assert tracker.can_make_request("m") is False
    assert tracker.wait_time("m") == pytest.approx(5.0)

    clock.now += timedelta(seconds=6)
    assert tracker.can_make_request("m") is True
    # Planned tokens beyond the remaining quota still block.
    assert tracker.can_make_request("m", planned_tokens=100) is False


def test_reset_times_never_move_backwards() -> None:
    tracker = RateLimitTracker(clock=FakeClock())
    later = NOW + timedelta(seconds=60)
    tracker.update(RateLimitInfo(model="m", requests_reset_at=later))
    merged = tracker.update(
        RateLimitInfo(model="m", requests_reset_at=NOW + timedelta(seconds=10))
    )
    assert merged.requests_reset_at == later


def test_update_ignores_none() -> None:
    tracker = RateLimitTracker()
    assert tracker.update(None) is None
    assert tracker.snapshot() == {}


@pytest.mark.parametrize(
    ("remaining", "throttle"), [(19, True), (20, True), (21, False)]
)
def test_should_throttle_at_fraction(remaining: int, throttle: bool) -> None:
    tracker = RateLimitTracker()
    tracker.update(
        RateLimitInfo(model="m", requests_limit=100, requests_remaining=remaining)
    )
    assert tracker.should_throttle("m", 0.2) is throttle
    assert tracker.should_throttle("unknown") is False


@pytest.mark.asyncio
async def test_check_and_wait_sleeps_until_allowed() -> None:
    clock = FakeClock()
    tracker = RateLimitTracker(clock=clock, sleep=clock.sleep)
    tracker.record_retry_after("m", 3.0)

    assert await tracker.check_and_wait("m") is True
    assert clock.sleeps == [pytest.approx(3.0)]


@pytest.mark.asyncio
async def test_check_and_wait_is_bounded() -> None:
    clock = FakeClock()
    tracker = RateLimitTracker(clock=clock, sleep=clock.sleep, max_wait_s=10.0)
    tracker.record_retry_after("m", 300.0)

    await tracker.check_and_wait("m")
    assert clock.sleeps == [10.0]


@pytest.mark.asyncio
async def test_check_and_wait_without_limits_does_not_sleep() -> None:
    clock = FakeClock()
    tracker = RateLimitTracker(clock=clock, sleep=clock.sleep)
    assert await tracker.check_and_wait("m") is True
    assert clock.sleeps == []


# =============================================================================
# Header parsers
# =============================================================================


def test_openai_headers() -> None:
    info = parse_openai_headers(
        {
            "x-ratelimit-limit-requests": "500",
            "x-ratelimit-remaining-requests": "499",
            "x-ratelimit-reset-requests": "120ms",
            "x-ratelimit-limit-tokens": "30000",
            "x-ratelimit-remaining-tokens": "29000",
            "x-ratelimit-reset-tokens": "1m30s",
            "x-request-id": "req-1",
        },
        "gpt-4o",
        now=NOW,
    )
    assert info is not None
    assert (info.requests_limit, info.requests_remaining) == (500, 499)
    assert info.tokens_reset_at == NOW + timedelta(seconds=90)
    assert info.requests_reset_at == NOW + timedelta(milliseconds=120)
    assert info.request_id == "req-1"
    assert info.model == "gpt-4o"


def test_parsers_return_none_without_rate_limit_headers() -> None:
    for provider in ProviderType:
        parser = parser_for(provider)
        if parser is not None:
            assert parser({"content-type": "application/json"}, "m") is None


def test_mock_provider_has_no_header_parser() -> None:
    assert parser_for(ProviderType.MOCK) is None


def test_anthropic_headers_use_rfc3339_resets() -> None:
    info = parse_anthropic_headers(
        {
            "anthropic-ratelimit-requests-limit": "50",
            "anthropic-ratelimit-requests-remaining": "0",
            "anthropic-ratelimit-requests-reset": "2025-06-01T12:00:30Z",
            "anthropic-ratelimit-input-tokens-limit": "40000",
            "anthropic-ratelimit-input-tokens-remaining": "39000",
            "anthropic-ratelimit-output-tokens-limit": "8000",
            "anthropic-ratelimit-output-tokens-remaining": "7990",
            "request-id": "req_abc",
        },
        "claude-sonnet-4-5",
        now=NOW,
    )
    assert info.requests_remaining == 0
    assert info.requests_reset_at == NOW + timedelta(seconds=30)
    assert info.input_tokens_remaining == 39000
    assert info.output_tokens_limit == 8000
    assert info.request_id == "req_abc"


def test_cerebras_headers_include_daily_window_and_custom_data() -> None:
    info = parse_cerebras_headers(
        {
            "x-ratelimit-limit-requests-minute": "30",
            "x-ratelimit-remaining-requests-minute": "29",
            "x-ratelimit-reset-requests-minute": "12.5",
            "x-ratelimit-limit-requests-day": "14400",
            "x-ratelimit-remaining-requests-day": "14000",
            "cerebras-region": "us-east",
        },
        "zai-glm-4.6",
        now=NOW,
    )
    assert info.requests_reset_at == NOW + timedelta(seconds=12.5)
    assert info.daily_requests_limit == 14400
    assert info.custom_data == {"region": "us-east"}


def test_gemini_headers_only_carry_retry_after() -> None:
    info = parse_gemini_headers({"retry-after": "3"}, "gemini-2.5-flash", now=NOW)
    assert info.retry_after_s == 3.0
    assert info.requests_limit is None


def test_openrouter_headers_detect_free_tier() -> None:
    reset_ms = int((NOW + timedelta(minutes=1)).timestamp() * 1000)
    info = parse_openrouter_headers(
        {
            "x-ratelimit-limit": "10",
            "x-ratelimit-remaining": "4",
            "x-ratelimit-reset": str(reset_ms),
        },
        "qwen/qwen3-coder",
        now=NOW,
    )
    assert info.is_free_tier is True
    assert info.requests_limit == 10
    assert info.credits_remaining == 4.0
    assert info.requests_reset_at == NOW + timedelta(minutes=1)

    paid = parse_openrouter_headers(
        {"x-ratelimit-limit": "500", "x-ratelimit-free-tier": "false"}, "m", now=NOW
    )
    assert paid.is_free_tier is False


def test_qwen_headers_fall_back_to_vendor_prefixes() -> None:
    info = parse_qwen_headers(
        {
            "qwen-ratelimit-limit-requests": "60",
            "qwen-ratelimit-remaining-requests": "59",
            "x-dashscope-ratelimit-limit-tokens": "100000",
            "req-cost-time": "250",
            "qwen-request-id": "q-1",
        },
        "qwen3-coder-flash",
        now=NOW,
    )
    assert info.requests_limit == 60
    assert info.requests_remaining == 59
    assert info.tokens_limit == 100000
    assert info.request_id == "q-1"
    assert info.custom_data["req-cost-time-ms"] == 250


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("30s", NOW + timedelta(seconds=30)),
        ("45", NOW + timedelta(seconds=45)),
        ("1767225600", datetime(2026, 1, 1, tzinfo=UTC)),
        ("2025-06-01T13:00:00Z", NOW + timedelta(hours=1)),
    ],
)
def test_parse_reset_time_formats(value: str, expected: datetime) -> None:
    assert parse_reset_time(value, now=NOW) == expected


# =============================================================================
# Client-side limiter
# =============================================================================


@pytest.mark.asyncio
async def test_limiter_allows_a_full_burst_then_waits() -> None:
    clock = FakeMonotonic()
    limiter = ClientRateLimiter(
        requests_per_minute=15, clock=clock, sleep=clock.sleep
    )
    for _ in range(15):
        assert await limiter.acquire() == 0.0
    wait = await limiter.acquire()
    assert wait == pytest.approx(4.0)
    assert clock.sleeps == [pytest.approx(4.0)]


@pytest.mark.asyncio
async def test_limiter_refuses_waits_beyond_ceiling() -> None:
    clock = FakeMonotonic()
    limiter = ClientRateLimiter(
        requests_per_minute=2, max_wait_s=10.0, clock=clock, sleep=clock.sleep
    )
    await limiter.acquire()
    await limiter.acquire()
    with pytest.raises(RateLimitError, match="client-side") as excinfo:
        await limiter.acquire()
    assert excinfo.value.retry_after_s == pytest.approx(30.0)
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_concurrent_waiters_each_stay_within_ceiling() -> None:
    """Queued callers count earlier reservations against the ceiling."""
    clock = FakeMonotonic()
    planned: list[float] = []

    async def record_sleep(seconds: float) -> None:
        planned.append(seconds)
        await asyncio.sleep(0)

    limiter = ClientRateLimiter(
        requests_per_minute=60, max_wait_s=2.5, clock=clock, sleep=record_sleep
    )
    for _ in range(60):
        await limiter.acquire()

    results = await asyncio.gather(
        limiter.acquire(),
        limiter.acquire(),
        limiter.acquire(),
        return_exceptions=True,
    )

    assert results[:2] == [pytest.approx(1.0), pytest.approx(2.0)]
    assert isinstance(results[2], RateLimitError)
    assert results[2].retry_after_s == pytest.approx(3.0)
    assert all(wait <= limiter.max_wait_s for wait in planned)

    # A rejected caller reserves nothing.
    clock.t += 3.0
    assert await limiter.acquire() == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_limiter_refills_over_time_and_updates_tier() -> None:
    clock = FakeMonotonic()
    limiter = ClientRateLimiter(requests_per_minute=60, clock=clock, sleep=clock.sleep)
    for _ in range(60):
        await limiter.acquire()
    clock.t += 1.0
    assert await limiter.acquire() == 0.0

    limiter.update_tier(360)
    assert limiter.requests_per_minute == 360
    for _ in range(360):
        assert await limiter.acquire() == 0.0


def test_limiter_rejects_non_positive_rates() -> None:
    with pytest.raises(ValueError):
        ClientRateLimiter(requests_per_minute=0)
