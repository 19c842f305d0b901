"""OAuth credential manager with single-flight token refresh."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging
import threading
from typing import TYPE_CHECKING, TypeVar

from llmrelay._singleflight import SingleFlight
from llmrelay.auth.credentials import OAuthCredential
from llmrelay.errors import (
    AuthenticationError,
    CredentialRefreshError,
    ErrorKind,
    NoCredentialsError,
    error_kind_of,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    RefreshFunc = Callable[[OAuthCredential], Awaitable[OAuthCredential]]
    TokenRefreshCallback = Callable[[OAuthCredential], object]

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_MARGIN_S = 60.0
DEFAULT_REFRESH_TIMEOUT_S = 10.0


class CredentialState(str, Enum):
    """Lifecycle of one credential inside the manager."""

    VALID = "valid"
    REFRESHING = "refreshing"
    #: Refresh or use failed; quarantined until reset.
    EXPIRED = "expired"
    #: Refresh token rejected by the provider; quarantined until reset.
    INVALID = "invalid"


async def refresh_not_configured(cred: OAuthCredential) -> OAuthCredential:
    """Refresh function for providers without an OAuth refresh protocol."""
    raise AuthenticationError(
        f"token refresh not configured for credential {cred.id}"
    )


class OAuthManager:
    """Holds OAuth credentials and keeps their access tokens valid.

    The manager knows nothing about refresh wire formats; it calls the
    ``refresh_func`` supplied at construction. Concurrent callers needing the
    same credential refreshed share one refresh call.
    """

    def __init__(
        self,
        credentials: list[OAuthCredential],
        refresh_func: RefreshFunc | None = None,
        *,
        provider: str = "",
        margin_s: float = DEFAULT_EXPIRY_MARGIN_S,
        refresh_timeout_s: float = DEFAULT_REFRESH_TIMEOUT_S,
        on_token_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        self.provider = provider
        self.margin_s = margin_s
        self.refresh_timeout_s = refresh_timeout_s
        self.on_token_refresh = on_token_refresh
        self._refresh_func: RefreshFunc = refresh_func or refresh_not_configured
        self._lock = threading.Lock()
        self._flight: SingleFlight[str, OAuthCredential] = SingleFlight()
        self._creds: dict[str, OAuthCredential] = {}
        self._states: dict[str, CredentialState] = {}
        for cred in credentials:
            if not cred.is_usable:
                logger.warning(
                    "%s OAuth credential %s has neither access nor refresh token; "
                    "dropping it",
                    provider,
                    cred.id,
                )
                continue
            if cred.id in self._creds:
                logger.warning(
                    "%s duplicate OAuth credential id %s ignored", provider, cred.id
                )
                continue
            self._creds[cred.id] = cred
            self._states[cred.id] = CredentialState.VALID

    def __len__(self) -> int:
        return len(self._creds)

    # --- Snapshots ---

    def credentials(self) -> list[OAuthCredential]:
        """Credentials in configured order."""
        with self._lock:
            return list(self._creds.values())

    def get(self, cred_id: str) -> OAuthCredential | None:
        with self._lock:
            return self._creds.get(cred_id)

    def state(self, cred_id: str) -> CredentialState | None:
        with self._lock:
            if cred_id in self._flight_ids():
                return CredentialState.REFRESHING
            return self._states.get(cred_id)

    def _flight_ids(self) -> set[str]:
        return {cid for cid in self._creds if self._flight.in_flight(cid)}

    # --- Health ---

    def report_success(self, cred_id: str) -> None:
        with self._lock:
            if cred_id in self._states:
                self._states[cred_id] = CredentialState.VALID

    def report_failure(self, cred_id: str, kind: ErrorKind | None = None) -> None:
        if kind is not ErrorKind.AUTH:
            return
        with self._lock:
            if cred_id in self._states:
                self._states[cred_id] = CredentialState.EXPIRED
        logger.warning(
            "%s OAuth credential %s quarantined after auth failure",
            self.provider,
            cred_id,
        )

    def reset(self, cred_id: str | None = None) -> None:
        """Return quarantined credentials to service."""
        with self._lock:
            for cid in list(self._states):
                if cred_id is None or cid == cred_id:
                    self._states[cid] = CredentialState.VALID

    def clear(self) -> None:
        with self._lock:
            self._creds.clear()
            self._states.clear()

    def _usable_ids(self) -> list[str]:
        with self._lock:
            return [
                cid
                for cid, state in self._states.items()
                if state is CredentialState.VALID
            ]

    # --- Tokens ---

    def _fresh(self, cred_id: str) -> OAuthCredential | None:
        cred = self.get(cred_id)
        if cred is not None and cred.is_fresh(self.margin_s):
            return cred
        return None

    async def access_token_for(self, cred: OAuthCredential | str) -> str:
        """Return a valid access token, refreshing the credential if needed."""
        fresh = await self.ensure_fresh(cred)
        return fresh.access_token

    async def ensure_fresh(self, cred: OAuthCredential | str) -> OAuthCredential:
        """Return the credential with an access token valid past the margin."""
        cred_id = cred if isinstance(cred, str) else cred.id
        state = self.state(cred_id)
        if state is None:
            raise AuthenticationError(
                f"unknown OAuth credential {cred_id} for {self.provider}"
            )
        if state in (CredentialState.EXPIRED, CredentialState.INVALID):
            raise AuthenticationError(
                f"OAuth credential {cred_id} is {state.value}",
                hint="Re-authenticate or call reset() after fixing the credential.",
            )
        return await self._flight.do(
            cred_id,
            current=lambda: self._fresh(cred_id),
            work=lambda: self._refresh(cred_id),
        )

    async def refresh(self, cred_id: str) -> OAuthCredential:
        """Force a refresh, joining one already in flight."""
        return await self._flight.do(
            cred_id, current=lambda: None, work=lambda: self._refresh(cred_id)
        )

    async def _refresh(self, cred_id: str) -> OAuthCredential:
        current = self.get(cred_id)
        if current is None:
            raise AuthenticationError(f"unknown OAuth credential {cred_id}")
        if not current.refresh_token:
            with self._lock:
                self._states[cred_id] = CredentialState.EXPIRED
            raise AuthenticationError(
                f"OAuth credential {cred_id} expired and has no refresh token"
            )
        logger.info("%s refreshing OAuth credential %s", self.provider, cred_id)
        try:
            updated = await asyncio.wait_for(
                self._refresh_func(current), timeout=self.refresh_timeout_s
            )
        except Exception as e:
            kind = error_kind_of(e)
            rejected = kind in (ErrorKind.AUTH, ErrorKind.INVALID_REQUEST)
            with self._lock:
                self._states[cred_id] = (
                    CredentialState.INVALID if rejected else CredentialState.EXPIRED
                )
            logger.warning(
                "%s OAuth refresh failed for credential %s: %s",
                self.provider,
                cred_id,
                e,
            )
            raise
        with self._lock:
            if cred_id in self._creds:
                self._creds[cred_id] = updated
                self._states[cred_id] = CredentialState.VALID
        if self.on_token_refresh is not None:
            self.on_token_refresh(updated)
        return updated

    async def refresh_all(self) -> list[OAuthCredential]:
        """Refresh every credential in parallel.

        Raises CredentialRefreshError listing every failure.
        """
        ids = [c.id for c in self.credentials()]
        results = await asyncio.gather(
            *(self.refresh(cid) for cid in ids), return_exceptions=True
        )
        failures: dict[str, BaseException] = {}
        refreshed: list[OAuthCredential] = []
        for cid, result in zip(ids, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures[cid] = result
            else:
                refreshed.append(result)
        if failures:
            raise CredentialRefreshError(
                f"{self.provider}: OAuth refresh failed for "
                f"{len(failures)} of {len(ids)} credential(s): "
                + ", ".join(f"{cid} ({err})" for cid, err in failures.items()),
                failures=failures,
            )
        return refreshed

    # --- Failover ---

    async def execute_with_failover(
        self, op: Callable[[OAuthCredential], Awaitable[T]]
    ) -> T:
        """Run ``op`` with each usable credential until one succeeds.

        Credentials are made fresh before use. Auth failures quarantine the
        credential; rate-limit failures move straight on to the next one.
        """
        if not self._creds:
            raise NoCredentialsError(
                f"no OAuth credentials configured for {self.provider}"
            )
        ids = self._usable_ids()
        if not ids:
            raise AuthenticationError(
                f"{self.provider}: all OAuth credentials are quarantined",
                hint="Re-authenticate or call reset().",
            )

        last_error: Exception | None = None
        for cred_id in ids:
            try:
                cred = await self.ensure_fresh(cred_id)
            except Exception as e:
                last_error = e
                continue
            try:
                result = await op(cred)
            except Exception as e:
                last_error = e
                kind = error_kind_of(e)
                self.report_failure(cred_id, kind)
                if kind is ErrorKind.RATE_LIMIT:
                    logger.warning(
                        "%s OAuth credential %s rate limited (retry after %s s)",
                        self.provider,
                        cred_id,
                        getattr(e, "retry_after_s", None),
                    )
                continue
            self.report_success(cred_id)
            return result

        if last_error is None:
            raise RuntimeError(f"{self.provider}: failover ended without an attempt")
        raise last_error
