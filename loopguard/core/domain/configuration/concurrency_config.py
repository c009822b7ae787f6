from __future__ import annotations

from typing import Any

from pydantic import field_validator

from loopguard.core.domain.base import ValueObject


class ConcurrencyConfiguration(ValueObject):
    """Configuration for the local-model concurrency gate.

    ``queue_timeout`` is expressed in milliseconds.
    """

    max_concurrent_requests: int = 2
    queue_timeout: float = 120_000
    adaptive_throttling: bool = True

    @field_validator("max_concurrent_requests")
    @classmethod
    def validate_max_concurrent_requests(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        return v

    @field_validator("queue_timeout")
    @classmethod
    def validate_queue_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("queue_timeout must be positive")
        return v

    @property
    def queue_timeout_seconds(self) -> float:
        return self.queue_timeout / 1000.0

    def merged(self, **changes: Any) -> ConcurrencyConfiguration:
        """Return a validated copy with ``changes`` applied.

        Unlike ``model_copy`` this re-runs validation, so runtime updates
        cannot smuggle in a zero concurrency ceiling.
        """
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise ValueError(
                f"Unknown concurrency settings: {', '.join(sorted(unknown))}"
            )
        return type(self).model_validate({**self.model_dump(), **changes})

    def with_max_concurrent_requests(self, value: int) -> ConcurrencyConfiguration:
        return self.merged(max_concurrent_requests=value)

    def with_queue_timeout(self, value: float) -> ConcurrencyConfiguration:
        return self.merged(queue_timeout=value)

    def with_adaptive_throttling(self, enabled: bool) -> ConcurrencyConfiguration:
        return self.merged(adaptive_throttling=enabled)
