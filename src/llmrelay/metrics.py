"""Per-provider request metrics."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import threading

from llmrelay._http import utcnow


@dataclass(frozen=True)
class ProviderMetrics:
    """Counters for one provider instance. Values are snapshots."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_latency_s: float = 0.0
    tokens_used: int = 0
    last_request_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None

    @property
    def average_latency_s(self) -> float:
        completed = self.success_count + self.error_count
        return self.total_latency_s / completed if completed else 0.0


class MetricsRecorder:
    """Thread-safe accumulator behind ``Provider.get_metrics``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics = ProviderMetrics()

    def record_request(self) -> None:
        with self._lock:
            self._metrics = replace(
                self._metrics,
                request_count=self._metrics.request_count + 1,
                last_request_at=utcnow(),
            )

    def record_success(self, latency_s: float, tokens: int = 0) -> None:
        with self._lock:
            m = self._metrics
            self._metrics = replace(
                m,
                success_count=m.success_count + 1,
                total_latency_s=m.total_latency_s + latency_s,
                tokens_used=m.tokens_used + tokens,
                last_success_at=utcnow(),
            )

    def record_tokens(self, tokens: int) -> None:
        """Add usage reported after the request completed, e.g. by a stream."""
        with self._lock:
            m = self._metrics
            self._metrics = replace(m, tokens_used=m.tokens_used + tokens)

    def record_error(self, error: BaseException, latency_s: float = 0.0) -> None:
        with self._lock:
            m = self._metrics
            self._metrics = replace(
                m,
                error_count=m.error_count + 1,
                total_latency_s=m.total_latency_s + latency_s,
                last_error_at=utcnow(),
                last_error=str(error),
            )

    def snapshot(self) -> ProviderMetrics:
        with self._lock:
            return self._metrics

    def reset(self) -> None:
        with self._lock:
            self._metrics = ProviderMetrics()
