"""OAuth credential record."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from llmrelay._http import utcnow


@dataclass(frozen=True)
class OAuthCredential:
    """One OAuth credential set.

    Records are immutable; a refresh produces a new record that replaces the
    old one inside the OAuth manager. Secrets are kept out of ``repr``.
    """

    id: str
    access_token: str = field(default="", repr=False)
    refresh_token: str = field(default="", repr=False)
    #: None means the access token never expires.
    expires_at: datetime | None = None
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    scopes: tuple[str, ...] = ()
    issued_at: datetime | None = None
    last_refresh: datetime | None = None
    refresh_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Naive timestamps are taken as UTC.
        for name in ("expires_at", "issued_at", "last_refresh"):
            value = getattr(self, name)
            if isinstance(value, datetime) and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=UTC))

    @property
    def is_usable(self) -> bool:
        """A credential needs an access token or a way to get one."""
        return bool(self.access_token or self.refresh_token)

    def is_fresh(self, margin_s: float = 60.0, *, now: datetime | None = None) -> bool:
        """Whether the access token stays valid for at least ``margin_s``."""
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow()) + timedelta(seconds=margin_s)

    def refreshed(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_in_s: float | None,
        now: datetime | None = None,
    ) -> OAuthCredential:
        """Return the record that results from a successful refresh.

        A rotated refresh token is adopted when present. A missing lifetime
        defaults to one hour.
        """
        at = now or utcnow()
        lifetime = 3600.0 if expires_in_s is None else expires_in_s
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=at + timedelta(seconds=lifetime),
            issued_at=at,
            last_refresh=at,
            refresh_count=self.refresh_count + 1,
        )
