"""Exception hierarchy for llmrelay."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping


class ErrorKind(str, Enum):
    """Uniform classification of a failed provider call."""

    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    SERVER = "server"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Whether a failure of this kind is worth retrying as a whole."""
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.SERVER, ErrorKind.TIMEOUT, ErrorKind.NETWORK}
)


class RelayError(Exception):
    """Base exception for all llmrelay errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(RelayError):
    """Provider or auth configuration is invalid."""


class InvalidRequestError(RelayError):
    """A canonical request failed local validation."""


class AuthenticationError(RelayError):
    """No usable credential could be found or produced."""


class NoCredentialsError(AuthenticationError):
    """A credential pool is empty."""


class CredentialRefreshError(AuthenticationError):
    """One or more OAuth refreshes failed during a bulk refresh."""

    def __init__(
        self,
        message: str,
        *,
        failures: Mapping[str, BaseException],
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.failures = dict(failures)


class UnsupportedOperationError(RelayError):
    """The provider does not implement the requested operation."""


class StreamCancelledError(RelayError):
    """A stream was cancelled through its cancel signal."""


class APIError(RelayError):
    """A provider call failed.

    Carries the classified kind plus the raw status and body so callers can
    decide on retries without parsing messages. ``retryable`` defaults from
    ``kind`` but a provider-specific classifier may override it.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        body: str | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.kind = kind
        self.retryable = kind.retryable if retryable is None else retryable
        self.status_code = status_code
        self.body = body
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.request_id = request_id


class RateLimitError(APIError):
    """Rate limit exceeded, server-side (HTTP 429) or client-side."""

    def __init__(
        self, message: str, *, kind: ErrorKind = ErrorKind.RATE_LIMIT, **kwargs: Any
    ) -> None:
        super().__init__(message, kind=kind, **kwargs)


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Return the kind of the first classified error in the exception chain."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, APIError):
            return e.kind
    return ErrorKind.UNKNOWN


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, without cycles."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
