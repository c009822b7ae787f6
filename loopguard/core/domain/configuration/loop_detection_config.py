from __future__ import annotations

from pydantic import field_validator, model_validator

from loopguard.core.domain.backend_type import BackendType
from loopguard.core.domain.base import ValueObject


class LoopDetectionConfiguration(ValueObject):
    """Configuration for loop detection.

    Holds the thresholds used by tool-call tracking, content chanting
    detection and the periodic LLM-based check. The defaults are the tuned
    values the detector ships with; the density and confidence thresholds
    are empirically chosen and kept tunable rather than re-derived.
    """

    enabled: bool = True

    # Tool call tracking
    tool_call_loop_threshold: int = 5

    # Content chanting
    content_loop_threshold: int = 4
    content_chunk_size: int = 20
    max_history_length: int = 1000
    max_chunk_distance_factor: float = 2.0

    # Fast-path heuristics
    char_repeat_threshold: int = 16
    recent_history_window: int = 300
    dense_markup_min_length: int = 100
    dense_markup_ratio: float = 0.6

    # LLM-based check
    llm_check_enabled: bool = True
    llm_check_after_turns: int = 30
    llm_check_history_count: int = 20
    default_llm_check_interval: int = 3
    min_llm_check_interval: int = 5
    max_llm_check_interval: int = 15
    llm_loop_confidence_threshold: float = 0.9
    llm_check_model: str | None = None
    backend_type: BackendType | None = None

    # Recovery
    max_recovery_attempts: int = 2

    @field_validator("tool_call_loop_threshold", "content_loop_threshold")
    @classmethod
    def validate_repetition_thresholds(cls, v: int) -> int:
        if v < 2:
            raise ValueError("Repetition thresholds must be at least 2")
        return v

    @field_validator(
        "content_chunk_size",
        "max_history_length",
        "char_repeat_threshold",
        "llm_check_history_count",
        "default_llm_check_interval",
        "min_llm_check_interval",
        "max_llm_check_interval",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be positive")
        return v

    @field_validator("llm_check_after_turns", "max_recovery_attempts")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @field_validator("dense_markup_ratio", "llm_loop_confidence_threshold")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Ratio must be between 0.0 and 1.0")
        return v

    @model_validator(mode="after")
    def validate_relationships(self) -> LoopDetectionConfiguration:
        if self.max_history_length < self.content_chunk_size:
            raise ValueError("max_history_length must be >= content_chunk_size")
        if self.min_llm_check_interval > self.max_llm_check_interval:
            raise ValueError(
                "min_llm_check_interval must be <= max_llm_check_interval"
            )
        return self

    @property
    def max_chunk_distance(self) -> float:
        """Largest average gap between chunk repeats that still counts as chanting."""
        return self.content_chunk_size * self.max_chunk_distance_factor

    def with_enabled(self, enabled: bool) -> LoopDetectionConfiguration:
        """Create a new config with updated enabled flag."""
        return self.model_copy(update={"enabled": enabled})

    def with_llm_check_enabled(self, enabled: bool) -> LoopDetectionConfiguration:
        """Create a new config with updated LLM check flag."""
        return self.model_copy(update={"llm_check_enabled": enabled})

    def with_backend_type(
        self, backend_type: BackendType | None
    ) -> LoopDetectionConfiguration:
        """Create a new config bound to a backend type."""
        return self.model_copy(update={"backend_type": backend_type})

    def with_tool_call_loop_threshold(self, threshold: int) -> LoopDetectionConfiguration:
        """Create a new config with an updated tool call threshold."""
        return self.model_validate(
            {**self.model_dump(), "tool_call_loop_threshold": threshold}
        )
