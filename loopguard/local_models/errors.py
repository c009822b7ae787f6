"""
Local model error taxonomy and retry policy.

Self-hosted servers fail in recognisable ways. Connection failures and
models that are still loading are worth retrying; exhausted memory, missing
models and oversized contexts never succeed on retry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCAL_MODEL_ERROR_PATTERNS = (
    "connection refused",
    "econnrefused",
    "model not loaded",
    "model not found",
    "out of memory",
    "cuda out of memory",
    "inference timeout",
    "model loading",
    "context length exceeded",
    "token limit exceeded",
    "ollama",
    "local server",
    "localhost",
)

PERMANENT_ERROR_PATTERNS = (
    "out of memory",
    "model not found",
    "context length exceeded",
)


class LocalModelErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNRELATED = "unrelated"


def _error_text(error: object) -> str:
    return str(error).lower()


def is_local_model_error(error: object) -> bool:
    """Whether the error message looks like a local inference server failure."""
    message = _error_text(error)
    return any(pattern in message for pattern in LOCAL_MODEL_ERROR_PATTERNS)


def classify_local_model_error(error: object) -> LocalModelErrorKind:
    if not is_local_model_error(error):
        return LocalModelErrorKind.UNRELATED
    message = _error_text(error)
    if any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS):
        return LocalModelErrorKind.PERMANENT
    return LocalModelErrorKind.TRANSIENT


@dataclass(frozen=True)
class LocalModelRetryConfig:
    """Shorter, gentler backoff than the cloud defaults."""

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 8000
    backoff_multiplier: float = 1.5

    def should_retry(self, error: object) -> bool:
        """Permanent local failures are never retried; anything else may be."""
        return classify_local_model_error(error) is not LocalModelErrorKind.PERMANENT

    def delay_ms(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return min(delay, self.max_delay_ms)


def get_local_model_retry_config() -> LocalModelRetryConfig:
    return LocalModelRetryConfig()


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: LocalModelRetryConfig | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Call ``fn`` until it succeeds, the error is permanent, or attempts run out.

    The last error is re-raised unchanged.
    """
    policy = config or get_local_model_retry_config()
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.should_retry(exc):
                raise
            delay = policy.delay_ms(attempt)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.0fms",
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            await sleep(delay / 1000.0)
            attempt += 1
