from __future__ import annotations

from typing import Any

from loopguard.core.common.logging_utils import get_logger
from loopguard.core.domain.loop_events import LoopDetectedEvent
from loopguard.core.interfaces.telemetry_interface import ILoopTelemetrySink


class StructlogTelemetrySink(ILoopTelemetrySink):
    """Emits loop-detected events as structured log records."""

    def __init__(self, logger: Any | None = None) -> None:
        self._logger = logger or get_logger("loopguard.telemetry")

    def log_loop_detected(self, event: LoopDetectedEvent) -> None:
        self._logger.warning(
            "loop_detected",
            loop_type=event.loop_type.value,
            prompt_id=event.prompt_id,
            timestamp=event.timestamp,
            confidence=event.confidence,
        )


class NullTelemetrySink(ILoopTelemetrySink):
    """Discards every event."""

    def log_loop_detected(self, event: LoopDetectedEvent) -> None:
        return None


class RecordingTelemetrySink(ILoopTelemetrySink):
    """Keeps events in memory, e.g. for per-session summaries."""

    def __init__(self) -> None:
        self.events: list[LoopDetectedEvent] = []

    def log_loop_detected(self, event: LoopDetectedEvent) -> None:
        self.events.append(event)
