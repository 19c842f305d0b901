"""OAuth manager: freshness, single-flight refresh, quarantine and failover."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from llmrelay._http import utcnow
from llmrelay._singleflight import SingleFlight
from llmrelay.auth import CredentialState, OAuthCredential, OAuthManager
from llmrelay.errors import (
    APIError,
    AuthenticationError,
    CredentialRefreshError,
    ErrorKind,
    NoCredentialsError,
)

pytestmark = pytest.mark.unit


def _expired(cred_id: str = "c1", **kwargs) -> OAuthCredential:
    return OAuthCredential(
        id=cred_id,
        access_token="old",
        refresh_token="rt",
        expires_at=utcnow() - timedelta(seconds=10),
        **kwargs,
    )


def _fresh(cred_id: str = "c1") -> OAuthCredential:
    return OAuthCredential(
        id=cred_id,
        access_token="live",
        refresh_token="rt",
        expires_at=utcnow() + timedelta(hours=1),
    )


class CountingRefresh:
    """Refresh double that yields to the loop so concurrent callers overlap."""

    def __init__(self, *, fail: BaseException | None = None) -> None:
        self.calls = 0
        self.fail = fail

    async def __call__(self, cred: OAuthCredential) -> OAuthCredential:
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.fail is not None:
            raise self.fail
        return cred.refreshed(
            access_token=f"new-{self.calls}", refresh_token=None, expires_in_s=3600
        )


def test_credential_freshness_respects_margin() -> None:
    soon = OAuthCredential(
        id="c", access_token="t", expires_at=utcnow() + timedelta(seconds=30)
    )
    assert soon.is_fresh(margin_s=60) is False
    assert soon.is_fresh(margin_s=10) is True
    assert OAuthCredential(id="c", access_token="t").is_fresh() is True
    assert OAuthCredential(id="c", refresh_token="r").is_fresh() is False


def test_refreshed_keeps_refresh_token_unless_rotated() -> None:
    cred = _expired()
    kept = cred.refreshed(access_token="a", refresh_token=None, expires_in_s=None)
    assert kept.refresh_token == "rt"
    assert kept.refresh_count == 1
    rotated = kept.refreshed(access_token="b", refresh_token="rt2", expires_in_s=60)
    assert rotated.refresh_token == "rt2"
    assert rotated.refresh_count == 2


def test_unusable_and_duplicate_credentials_are_dropped() -> None:
    manager = OAuthManager(
        [OAuthCredential(id="empty"), _fresh("a"), _fresh("a"), _fresh("b")]
    )
    assert [c.id for c in manager.credentials()] == ["a", "b"]


@pytest.mark.asyncio
async def test_fresh_credential_is_returned_without_refresh() -> None:
    refresh = CountingRefresh()
    manager = OAuthManager([_fresh()], refresh)
    assert await manager.access_token_for("c1") == "live"
    assert refresh.calls == 0


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    refresh = CountingRefresh()
    manager = OAuthManager([_expired()], refresh)

    tokens = await asyncio.gather(*(manager.access_token_for("c1") for _ in range(5)))

    assert refresh.calls == 1
    assert tokens == ["new-1"] * 5
    cred = manager.get("c1")
    assert cred.refresh_count == 1
    assert cred.is_fresh(manager.margin_s)
    assert manager.state("c1") is CredentialState.VALID


@pytest.mark.asyncio
async def test_on_token_refresh_callback_receives_new_record() -> None:
    seen: list[OAuthCredential] = []
    manager = OAuthManager(
        [_expired()], CountingRefresh(), on_token_refresh=seen.append
    )
    await manager.ensure_fresh("c1")
    assert [c.access_token for c in seen] == ["new-1"]


@pytest.mark.asyncio
async def test_rejected_refresh_token_marks_credential_invalid() -> None:
    rejected = APIError("invalid_grant", kind=ErrorKind.INVALID_REQUEST)
    refresh = CountingRefresh(fail=rejected)
    manager = OAuthManager([_expired()], refresh)

    with pytest.raises(APIError):
        await manager.access_token_for("c1")
    assert manager.state("c1") is CredentialState.INVALID

    # Never tried again until reset.
    with pytest.raises(AuthenticationError, match="invalid"):
        await manager.access_token_for("c1")
    assert refresh.calls == 1

    manager.reset("c1")
    assert manager.state("c1") is CredentialState.VALID


@pytest.mark.asyncio
async def test_transient_refresh_failure_marks_credential_expired() -> None:
    refresh = CountingRefresh(fail=APIError("down", kind=ErrorKind.SERVER))
    manager = OAuthManager([_expired()], refresh)
    with pytest.raises(APIError):
        await manager.refresh("c1")
    assert manager.state("c1") is CredentialState.EXPIRED


@pytest.mark.asyncio
async def test_expired_without_refresh_token_fails() -> None:
    cred = OAuthCredential(
        id="c1", access_token="old", expires_at=utcnow() - timedelta(seconds=1)
    )
    manager = OAuthManager([cred], CountingRefresh())
    with pytest.raises(AuthenticationError, match="no refresh token"):
        await manager.access_token_for("c1")


@pytest.mark.asyncio
async def test_unknown_credential_is_an_authentication_error() -> None:
    manager = OAuthManager([_fresh()])
    with pytest.raises(AuthenticationError, match="unknown"):
        await manager.access_token_for("missing")


@pytest.mark.asyncio
async def test_refresh_all_reports_every_failure() -> None:
    async def refresh(cred: OAuthCredential) -> OAuthCredential:
        if cred.id == "bad":
            raise APIError("nope", kind=ErrorKind.AUTH)
        return cred.refreshed(access_token="n", refresh_token=None, expires_in_s=60)

    manager = OAuthManager([_expired("good"), _expired("bad")], refresh)
    with pytest.raises(CredentialRefreshError) as excinfo:
        await manager.refresh_all()
    assert set(excinfo.value.failures) == {"bad"}
    assert manager.get("good").access_token == "n"


@pytest.mark.asyncio
async def test_failover_quarantines_on_auth_and_uses_next() -> None:
    manager = OAuthManager([_fresh("a"), _fresh("b")], CountingRefresh())
    used: list[str] = []

    async def op(cred: OAuthCredential) -> str:
        used.append(cred.id)
        if cred.id == "a":
            raise APIError("401", kind=ErrorKind.AUTH)
        return "ok"

    assert await manager.execute_with_failover(op) == "ok"
    assert used == ["a", "b"]
    assert manager.state("a") is CredentialState.EXPIRED

    used.clear()
    await manager.execute_with_failover(op)
    assert used == ["b"]


@pytest.mark.asyncio
async def test_failover_with_no_credentials() -> None:
    async def op(cred: OAuthCredential) -> str:
        return cred.id

    with pytest.raises(NoCredentialsError):
        await OAuthManager([]).execute_with_failover(op)


@pytest.mark.asyncio
async def test_failover_raises_last_error_when_every_credential_fails() -> None:
    manager = OAuthManager([_fresh("a"), _fresh("b")], CountingRefresh())

    async def op(cred: OAuthCredential) -> str:
        raise APIError(f"down for {cred.id}", kind=ErrorKind.SERVER)

    with pytest.raises(APIError, match="down for b"):
        await manager.execute_with_failover(op)


@pytest.mark.asyncio
async def test_without_refresh_protocol_refresh_fails_cleanly() -> None:
    manager = OAuthManager([_expired()])
    with pytest.raises(AuthenticationError, match="not configured"):
        await manager.access_token_for("c1")


@pytest.mark.asyncio
async def test_single_flight_waiter_survives_creator_failure() -> None:
    flight: SingleFlight[str, int] = SingleFlight()
    started = asyncio.Event()

    async def work() -> int:
        started.set()
        await asyncio.sleep(0.01)
        raise RuntimeError("boom")

    creator = asyncio.create_task(flight.do("k", current=lambda: None, work=work))
    await started.wait()
    waiter = asyncio.create_task(flight.do("k", current=lambda: None, work=work))

    results = await asyncio.gather(creator, waiter, return_exceptions=True)
    assert all(isinstance(r, RuntimeError) for r in results)
    assert flight.in_flight("k") is False
