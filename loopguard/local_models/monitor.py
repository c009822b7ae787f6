from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from loopguard.core.interfaces.model_bases import InternalDTO

RESPONSE_TIME_HISTORY_LIMIT = 100
ASSUMED_TOKENS_PER_RESPONSE = 100


@dataclass(frozen=True)
class LocalModelMetrics(InternalDTO):
    """Rolling local model performance snapshot."""

    memory_usage: int
    response_time: float
    error_rate: float
    token_throughput: float


def _process_rss() -> int:
    return psutil.Process().memory_info().rss


class LocalModelMonitor:
    """Tracks response times and error counts for a local backend."""

    def __init__(self, memory_probe: Callable[[], int] = _process_rss) -> None:
        self._response_times: deque[float] = deque(maxlen=RESPONSE_TIME_HISTORY_LIMIT)
        self._error_count = 0
        self._total_requests = 0
        self._memory_probe = memory_probe

    def record_response_time(self, time_ms: float) -> None:
        self._response_times.append(time_ms)

    def record_error(self) -> None:
        self._error_count += 1

    def record_request(self) -> None:
        self._total_requests += 1

    def _average_response_time(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def get_metrics(self) -> LocalModelMetrics:
        error_rate = (
            self._error_count / self._total_requests if self._total_requests else 0.0
        )
        average = self._average_response_time()
        # Tokens per second, assuming a typical response length.
        throughput = ASSUMED_TOKENS_PER_RESPONSE / average * 1000 if average > 0 else 0.0
        return LocalModelMetrics(
            memory_usage=self._memory_probe(),
            response_time=average,
            error_rate=error_rate,
            token_throughput=throughput,
        )

    def should_adjust_configuration(self) -> bool:
        """True when errors, latency or memory suggest lowering the limits."""
        metrics = self.get_metrics()
        return (
            metrics.error_rate > 0.1
            or metrics.response_time > 30_000
            or metrics.memory_usage > 2e9
        )
