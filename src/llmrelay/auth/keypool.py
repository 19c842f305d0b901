"""API key pool with per-key health tracking and ordered failover."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import threading
import time
from typing import TYPE_CHECKING, TypeVar

from llmrelay.errors import (
    AuthenticationError,
    ErrorKind,
    NoCredentialsError,
    error_kind_of,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3


@dataclass
class APIKeyRecord:
    """Health bookkeeping for one key. Only the pool mutates these."""

    key: str = field(repr=False)
    index: int
    consecutive_failures: int = 0
    total_failures: int = 0
    success_count: int = 0
    last_used: float | None = None
    last_error_at: float | None = None
    healthy: bool = True
    #: Set by an auth-class failure; cleared only by ``reset``.
    quarantined: bool = False


class APIKeyPool:
    """Ordered set of API keys.

    ``execute_with_failover`` tries healthy keys in configured order, then keys
    that went unhealthy from repeated transient failures. Keys quarantined by
    an auth failure are skipped until ``reset``.
    """

    def __init__(
        self,
        keys: list[str],
        *,
        provider: str = "",
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.provider = provider
        self.failure_threshold = failure_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._records: list[APIKeyRecord] = []
        seen: set[str] = set()
        for key in keys:
            if key and key not in seen:
                seen.add(key)
                self._records.append(APIKeyRecord(key=key, index=len(self._records)))

    def __len__(self) -> int:
        return len(self._records)

    def keys(self) -> list[str]:
        """Keys in original order."""
        with self._lock:
            return [r.key for r in self._records]

    def records(self) -> list[APIKeyRecord]:
        """Copies of every record, in original order."""
        with self._lock:
            return [replace(r) for r in self._records]

    def record(self, key: str) -> APIKeyRecord | None:
        with self._lock:
            found = self._find(key)
            return replace(found) if found else None

    @property
    def healthy_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._records if r.healthy)

    def report_success(self, key: str) -> None:
        with self._lock:
            rec = self._find(key)
            if rec is None:
                return
            rec.success_count += 1
            rec.consecutive_failures = 0
            rec.last_used = self._clock()
            rec.healthy = True

    def report_failure(self, key: str, kind: ErrorKind | None = None) -> None:
        with self._lock:
            rec = self._find(key)
            if rec is None:
                return
            now = self._clock()
            rec.consecutive_failures += 1
            rec.total_failures += 1
            rec.last_used = now
            rec.last_error_at = now
            if kind is ErrorKind.AUTH:
                rec.healthy = False
                rec.quarantined = True
                logger.warning(
                    "%s API key #%d quarantined after auth failure",
                    self.provider,
                    rec.index,
                )
            elif rec.consecutive_failures >= self.failure_threshold:
                if rec.healthy:
                    logger.warning(
                        "%s API key #%d marked unhealthy after %d consecutive failures",
                        self.provider,
                        rec.index,
                        rec.consecutive_failures,
                    )
                rec.healthy = False

    def reset(self, key: str | None = None) -> None:
        """Restore one key (or every key) to a healthy state."""
        with self._lock:
            targets = [r for r in self._records if key is None or r.key == key]
            for rec in targets:
                rec.consecutive_failures = 0
                rec.healthy = True
                rec.quarantined = False

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def _find(self, key: str) -> APIKeyRecord | None:
        for rec in self._records:
            if rec.key == key:
                return rec
        return None

    def _attempt_order(self) -> list[str]:
        with self._lock:
            healthy = [r.key for r in self._records if r.healthy]
            degraded = [
                r.key for r in self._records if not r.healthy and not r.quarantined
            ]
        return healthy + degraded

    async def execute_with_failover(self, op: Callable[[str], Awaitable[T]]) -> T:
        """Run ``op`` with each key in turn until one succeeds.

        Raises the last error when every key fails.
        """
        if not self._records:
            raise NoCredentialsError(f"no API keys configured for {self.provider}")

        order = self._attempt_order()
        if not order:
            raise AuthenticationError(
                f"{self.provider}: all API keys are quarantined",
                hint="Fix the keys and call reset() to re-enable them.",
            )

        last_error: Exception | None = None
        for attempt, key in enumerate(order):
            try:
                result = await op(key)
            except Exception as e:
                last_error = e
                self.report_failure(key, error_kind_of(e))
                logger.debug(
                    "%s key attempt %d/%d failed: %s",
                    self.provider,
                    attempt + 1,
                    len(order),
                    e,
                )
                continue
            self.report_success(key)
            return result

        if last_error is None:
            raise RuntimeError(f"{self.provider}: failover ended without an attempt")
        raise last_error
