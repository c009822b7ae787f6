"""
Local Model Concurrency Manager

Bounds the number of in-flight requests sent to a self-hosted inference
backend. Excess requests wait in a FIFO queue with a per-item timeout, and
the effective concurrency limit shrinks when the backend starts erroring or
slowing down.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import psutil

from loopguard.core.common.exceptions import (
    QueueClearedError,
    QueueTimeoutError,
    RequestAbortedError,
    RequestExecutionError,
)
from loopguard.core.domain.configuration.concurrency_config import (
    ConcurrencyConfiguration,
)
from loopguard.core.interfaces.model_bases import InternalDTO

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_RATE_WEIGHT = 1 / 20
RESPONSE_TIME_WEIGHT = 0.1
HIGH_ERROR_RATE = 0.2
SLOW_RESPONSE_MS = 30_000
HIGH_ERROR_RATE_FACTOR = 0.5
SLOW_RESPONSE_FACTOR = 0.7
QUEUE_WAIT_HISTORY_LIMIT = 100


def _consume_result(future: asyncio.Future[Any]) -> None:
    # The caller went away while the work was running; nobody reads the outcome.
    if not future.cancelled():
        future.exception()


@dataclass(frozen=True)
class ConcurrencyMetrics(InternalDTO):
    """Point-in-time view of the gate. Times are in milliseconds."""

    active_requests: int
    queued_requests: int
    effective_concurrency_limit: int
    average_response_time: float
    error_rate: float
    average_queue_wait_time: float


@dataclass(eq=False)
class _QueuedRequest:
    request_id: str
    request_fn: Callable[[], Any]
    future: asyncio.Future[Any]
    enqueue_time: float
    abort_event: asyncio.Event | None = None
    timeout_handle: asyncio.TimerHandle | None = None
    abort_watcher: asyncio.Task[Any] | None = None
    task: asyncio.Task[Any] | None = None
    admitted_at: float | None = None

    def cleanup(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None
        if self.abort_watcher is not None and not self.abort_watcher.done():
            self.abort_watcher.cancel()
        self.abort_watcher = None


@dataclass
class _PerformanceMetrics:
    average_response_time: float = 0.0
    error_rate: float = 0.0
    queue_wait_times: deque[float] = field(
        default_factory=lambda: deque(maxlen=QUEUE_WAIT_HISTORY_LIMIT)
    )


class LocalModelConcurrencyManager:
    """FIFO admission gate with adaptive throttling for local inference backends."""

    def __init__(self, config: ConcurrencyConfiguration | None = None) -> None:
        """Initialize the manager.

        Args:
            config: Concurrency limits; defaults to two concurrent requests
                and a two minute queue timeout
        """
        self._config = config or ConcurrencyConfiguration()
        self._active: set[_QueuedRequest] = set()
        self._queue: deque[_QueuedRequest] = deque()
        self._metrics = _PerformanceMetrics()

        logger.info(
            "Initialized LocalModelConcurrencyManager: max_concurrent=%d, queue_timeout=%gms, adaptive=%s",
            self._config.max_concurrent_requests,
            self._config.queue_timeout,
            self._config.adaptive_throttling,
        )

    @property
    def config(self) -> ConcurrencyConfiguration:
        return self._config

    async def execute_request(
        self,
        request_id: str,
        request_fn: Callable[[], Awaitable[T] | T],
        abort_event: asyncio.Event | None = None,
    ) -> T:
        """Run ``request_fn`` once a concurrency slot is free.

        Args:
            request_id: Identifier used in logs and error messages
            request_fn: Zero-argument callable producing the result (a
                coroutine function or a plain callable)
            abort_event: When set while the request is queued, the request
                is removed and rejected; once running, the work is expected
                to observe the same event itself

        Returns:
            Whatever ``request_fn`` produced.

        Raises:
            QueueTimeoutError: The request waited longer than ``queue_timeout``
            RequestAbortedError: ``abort_event`` fired before admission
            QueueClearedError: ``clear_queue`` ran while the request was queued
            RequestExecutionError: ``request_fn`` raised a non-``Exception``
        """
        loop = asyncio.get_running_loop()
        item = _QueuedRequest(
            request_id=request_id,
            request_fn=request_fn,
            future=loop.create_future(),
            enqueue_time=time.monotonic(),
            abort_event=abort_event,
        )

        if abort_event is not None and abort_event.is_set():
            raise RequestAbortedError(request_id)

        self._queue.append(item)
        item.timeout_handle = loop.call_later(
            self._config.queue_timeout_seconds, self._on_queue_timeout, item
        )
        if abort_event is not None:
            item.abort_watcher = loop.create_task(self._watch_abort(item, abort_event))

        self._process_queue()

        try:
            return await asyncio.shield(item.future)
        except asyncio.CancelledError:
            if item in self._queue:
                self._queue.remove(item)
                item.cleanup()
                if not item.future.done():
                    item.future.cancel()
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("Request %s cancelled while queued", request_id)
            else:
                item.future.add_done_callback(_consume_result)
            raise

    def _process_queue(self) -> None:
        """Admit queued requests, oldest first, while slots are free."""
        while self._queue and len(self._active) < self.get_effective_limit():
            item = self._queue.popleft()
            item.cleanup()
            item.admitted_at = time.monotonic()
            self._metrics.queue_wait_times.append(
                (item.admitted_at - item.enqueue_time) * 1000.0
            )
            self._active.add(item)
            item.task = asyncio.get_running_loop().create_task(self._run(item))

    async def _run(self, item: _QueuedRequest) -> None:
        outcome: Any = None
        error: BaseException | None = None
        cancelled = False
        try:
            outcome = item.request_fn()
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError:
            cancelled = True
            error = RequestAbortedError(item.request_id)
        except Exception as exc:
            error = exc
        except BaseException as exc:
            error = RequestExecutionError(exc, item.request_id)

        self._active.discard(item)
        started = item.admitted_at if item.admitted_at is not None else item.enqueue_time
        if error is None:
            self._record_success((time.monotonic() - started) * 1000.0)
            if not item.future.done():
                item.future.set_result(outcome)
        else:
            if not isinstance(error, RequestAbortedError):
                self._record_error()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Request %s failed: %s", item.request_id, error)
            if not item.future.done():
                item.future.set_exception(error)

        self._process_queue()

        if cancelled:
            raise asyncio.CancelledError

    def _on_queue_timeout(self, item: _QueuedRequest) -> None:
        item.timeout_handle = None
        if item not in self._queue:
            return
        self._queue.remove(item)
        item.cleanup()
        self._record_error()
        logger.warning(
            "Request %s timed out in queue after %gms",
            item.request_id,
            self._config.queue_timeout,
        )
        if not item.future.done():
            item.future.set_exception(
                QueueTimeoutError(item.request_id, self._config.queue_timeout)
            )

    async def _watch_abort(self, item: _QueuedRequest, abort_event: asyncio.Event) -> None:
        await abort_event.wait()
        if item not in self._queue:
            return
        self._queue.remove(item)
        item.abort_watcher = None
        item.cleanup()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Request %s aborted while queued", item.request_id)
        if not item.future.done():
            item.future.set_exception(RequestAbortedError(item.request_id))

    def get_effective_limit(self) -> int:
        """Concurrency ceiling after adaptive throttling."""
        base_limit = self._config.max_concurrent_requests
        if not self._config.adaptive_throttling:
            return base_limit

        if self._metrics.error_rate > HIGH_ERROR_RATE:
            return max(1, math.floor(base_limit * HIGH_ERROR_RATE_FACTOR))

        if self._metrics.average_response_time > SLOW_RESPONSE_MS:
            return max(1, math.floor(base_limit * SLOW_RESPONSE_FACTOR))

        return base_limit

    def _record_success(self, response_time_ms: float) -> None:
        self._update_performance_metrics(response_time_ms, is_error=False)

    def _record_error(self) -> None:
        self._update_performance_metrics(0.0, is_error=True)

    def _update_performance_metrics(self, response_time_ms: float, is_error: bool) -> None:
        metrics = self._metrics
        metrics.error_rate = metrics.error_rate * (1 - ERROR_RATE_WEIGHT) + (
            ERROR_RATE_WEIGHT if is_error else 0.0
        )
        if not is_error and response_time_ms > 0:
            metrics.average_response_time = (
                metrics.average_response_time * (1 - RESPONSE_TIME_WEIGHT)
                + response_time_ms * RESPONSE_TIME_WEIGHT
            )

    def get_metrics(self) -> ConcurrencyMetrics:
        waits = self._metrics.queue_wait_times
        average_wait = sum(waits) / len(waits) if waits else 0.0
        return ConcurrencyMetrics(
            active_requests=len(self._active),
            queued_requests=len(self._queue),
            effective_concurrency_limit=self.get_effective_limit(),
            average_response_time=self._metrics.average_response_time,
            error_rate=self._metrics.error_rate,
            average_queue_wait_time=average_wait,
        )

    def update_config(self, **changes: Any) -> ConcurrencyConfiguration:
        """Apply runtime configuration changes and re-run admission.

        Lowering ``max_concurrent_requests`` never interrupts running work;
        no new request is admitted until the active count is back under the
        new limit.

        Raises:
            ValueError: A setting is unknown or invalid
        """
        self._config = self._config.merged(**changes)
        logger.info("Concurrency configuration updated: %s", changes)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop nothing can be queued.
            return self._config
        self._process_queue()
        return self._config

    def clear_queue(self) -> int:
        """Reject every queued request with QueueClearedError.

        Returns:
            Number of requests rejected
        """
        cleared = 0
        while self._queue:
            item = self._queue.popleft()
            item.cleanup()
            if not item.future.done():
                item.future.set_exception(QueueClearedError(item.request_id))
            cleared += 1
        if cleared:
            logger.info("Cleared %d queued requests", cleared)
        return cleared

    @staticmethod
    def get_optimal_config() -> ConcurrencyConfiguration:
        """Size the gate from total system memory."""
        total_memory = psutil.virtual_memory().total

        if total_memory > 8e9:
            max_concurrent_requests = 4
        elif total_memory > 4e9:
            max_concurrent_requests = 2
        else:
            max_concurrent_requests = 1

        return ConcurrencyConfiguration(
            max_concurrent_requests=max_concurrent_requests,
            queue_timeout=120_000,
            adaptive_throttling=True,
        )
