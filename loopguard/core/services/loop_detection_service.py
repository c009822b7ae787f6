"""
Per-session loop detection.

``LoopDetectionService`` owns one detector state per agent session. Stream
events are fed through a dispatch table keyed by event type; the first
detector that trips confirms the loop, which then stays confirmed until the
next ``reset``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from loopguard.core.domain.backend_type import supports_json_generation
from loopguard.core.domain.configuration.loop_detection_config import (
    LoopDetectionConfiguration,
)
from loopguard.core.domain.loop_events import LoopDetectedEvent, LoopType
from loopguard.core.domain.stream_events import (
    ContentEvent,
    StreamEvent,
    StreamEventType,
    ToolCallRequestEvent,
)
from loopguard.core.interfaces.loop_check_client_interface import ILoopCheckClient
from loopguard.core.interfaces.loop_detector_interface import ILoopDetector
from loopguard.core.interfaces.telemetry_interface import ILoopTelemetrySink
from loopguard.core.services.telemetry import StructlogTelemetrySink
from loopguard.loop_detection.content_tracker import ContentLoopTracker
from loopguard.loop_detection.fast_path import FastPathThresholds
from loopguard.loop_detection.semantic_check import SemanticLoopChecker
from loopguard.tool_call_loop.config import ToolCallLoopConfig
from loopguard.tool_call_loop.tracker import ToolCallTracker

logger = logging.getLogger(__name__)

BASE_RECOVERY_PROMPTS = (
    "Let me take a step back and approach this differently. What specific aspect should I focus on first?",
    "I notice I might be repeating myself. Can you provide more specific guidance on what you'd like me to do differently?",
    "Let me break this down into smaller, more manageable steps. What's the most important part to address first?",
)

TOOL_CALL_RECOVERY_PROMPTS = (
    "I seem to be stuck in a loop with tool calls. Let me try a different approach to this problem.",
    "Instead of repeating the same operations, let me analyze what we've learned so far and adjust my strategy.",
)

CONTENT_RECOVERY_PROMPTS = (
    "I notice I'm generating repetitive content. Let me refocus on providing more specific and actionable information.",
    "Let me restructure my response to be more targeted and avoid repetition.",
)

LLM_RECOVERY_PROMPTS = (
    "Looking back over the conversation, I don't appear to be making progress. Let me summarize what has been tried and pick a new direction.",
)


class DetectorState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    LOOP_CONFIRMED = "loop_confirmed"


class LoopDetectionService(ILoopDetector):
    """Detects tool-call repetition, content chanting and semantic loops."""

    def __init__(
        self,
        config: LoopDetectionConfiguration | None = None,
        telemetry: ILoopTelemetrySink | None = None,
        loop_check_client: ILoopCheckClient | None = None,
    ) -> None:
        self.config = config or LoopDetectionConfiguration()
        self._telemetry = telemetry or StructlogTelemetrySink()

        self._tool_tracker = ToolCallTracker(
            ToolCallLoopConfig(max_repeats=self.config.tool_call_loop_threshold)
        )
        self._content_tracker = ContentLoopTracker(
            content_loop_threshold=self.config.content_loop_threshold,
            content_chunk_size=self.config.content_chunk_size,
            max_history_length=self.config.max_history_length,
            max_chunk_distance_factor=self.config.max_chunk_distance_factor,
            fast_path=FastPathThresholds(
                char_repeat_threshold=self.config.char_repeat_threshold,
                recent_history_window=self.config.recent_history_window,
                dense_markup_min_length=self.config.dense_markup_min_length,
                dense_markup_ratio=self.config.dense_markup_ratio,
            ),
        )
        self._semantic_checker = SemanticLoopChecker(
            loop_check_client,
            check_after_turns=self.config.llm_check_after_turns,
            history_count=self.config.llm_check_history_count,
            default_interval=self.config.default_llm_check_interval,
            min_interval=self.config.min_llm_check_interval,
            max_interval=self.config.max_llm_check_interval,
            confidence_threshold=self.config.llm_loop_confidence_threshold,
            model=self.config.llm_check_model,
        )

        self._handlers: dict[StreamEventType, Callable[[Any], bool]] = {
            StreamEventType.TOOL_CALL_REQUEST: self._handle_tool_call,
            StreamEventType.CONTENT: self._handle_content,
            StreamEventType.TURN_BOUNDARY: self._handle_turn_boundary,
        }

        self.prompt_id = ""
        self._generation = 0
        self._state = DetectorState.IDLE
        self._loop_type: LoopType | None = None
        self._loop_recovery_attempts = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def loop_detected(self) -> bool:
        return self._state is DetectorState.LOOP_CONFIRMED

    @property
    def loop_type(self) -> LoopType | None:
        return self._loop_type

    def add_and_check(self, event: StreamEvent) -> bool:
        """Process one stream event; True once a loop is confirmed for this prompt."""
        if not self.config.enabled:
            return False
        if self._state is DetectorState.LOOP_CONFIRMED:
            return True

        self._state = DetectorState.TRACKING

        handler = self._handlers.get(getattr(event, "type", None))
        if handler is None:
            return False

        try:
            detected = handler(event)
        except Exception as exc:
            logger.error(
                "Loop detection failed for %s event: %s",
                getattr(event, "type", "unknown"),
                exc,
                exc_info=True,
            )
            return False

        return detected

    def _handle_tool_call(self, event: ToolCallRequestEvent) -> bool:
        # Chanting is only measured within a single uninterrupted stream.
        self._content_tracker.reset_tracking()
        if self._tool_tracker.track_tool_call(event.name, event.args):
            if logger.isEnabledFor(logging.WARNING):
                logger.warning(self._tool_tracker.format_loop_reason(event.name))
            self._confirm_loop(LoopType.CONSECUTIVE_IDENTICAL_TOOL_CALLS)
            return True
        return False

    def _handle_content(self, event: ContentEvent) -> bool:
        if self._content_tracker.check_content_loop(event.text):
            self._confirm_loop(LoopType.CHANTING_IDENTICAL_SENTENCES)
            return True
        return False

    def _handle_turn_boundary(self, event: Any) -> bool:
        self._content_tracker.reset()
        return False

    def _confirm_loop(
        self,
        loop_type: LoopType,
        reasoning: str | None = None,
        confidence: float | None = None,
    ) -> None:
        self._state = DetectorState.LOOP_CONFIRMED
        self._loop_type = loop_type
        self._emit(
            LoopDetectedEvent(
                loop_type=loop_type,
                prompt_id=self.prompt_id,
                reasoning=reasoning,
                confidence=confidence,
            )
        )

    def _emit(self, event: LoopDetectedEvent) -> None:
        try:
            self._telemetry.log_loop_detected(event)
        except Exception as exc:
            logger.warning("Telemetry sink failed: %s", exc, exc_info=True)

    async def turn_started(self, abort_event: asyncio.Event | None = None) -> bool:
        """Count a turn and, when due, ask the model whether the session is stuck."""
        if not self.config.enabled:
            return False
        if self._state is DetectorState.LOOP_CONFIRMED:
            return True

        if not self._semantic_checker.record_turn():
            return False

        if not self._llm_check_available():
            return False

        generation = self._generation
        result = await self._semantic_checker.query(abort_event)

        if generation != self._generation:
            logger.debug("Discarding LLM loop check result for a previous prompt")
            return False
        if abort_event is not None and abort_event.is_set():
            return False
        if self._state is DetectorState.LOOP_CONFIRMED:
            return True

        outcome = self._semantic_checker.evaluate(result)
        if not outcome.is_loop:
            return False

        if outcome.reasoning:
            logger.warning(outcome.reasoning)
        self._confirm_loop(
            LoopType.LLM_DETECTED_LOOP,
            reasoning=outcome.reasoning,
            confidence=outcome.confidence,
        )
        return True

    def _llm_check_available(self) -> bool:
        if not self.config.llm_check_enabled:
            return False
        if self._semantic_checker.client is None:
            return False
        if not supports_json_generation(self.config.backend_type):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "Skipping LLM loop check: backend %s lacks reliable JSON generation",
                    self.config.backend_type,
                )
            return False
        return True

    def reset(self, prompt_id: str) -> None:
        self.prompt_id = prompt_id
        self._generation += 1
        self._tool_tracker.reset()
        self._content_tracker.reset()
        self._semantic_checker.reset()
        self._state = DetectorState.IDLE
        self._loop_type = None
        self._loop_recovery_attempts = 0

    def get_loop_recovery_prompts(self) -> list[str]:
        """Recovery suggestions matching the detector that tripped."""
        if self._loop_type is LoopType.CONSECUTIVE_IDENTICAL_TOOL_CALLS:
            specific = TOOL_CALL_RECOVERY_PROMPTS
        elif self._loop_type is LoopType.LLM_DETECTED_LOOP:
            specific = LLM_RECOVERY_PROMPTS
        else:
            specific = CONTENT_RECOVERY_PROMPTS
        return [*BASE_RECOVERY_PROMPTS, *specific]

    def should_attempt_auto_recovery(self) -> bool:
        return self._loop_recovery_attempts < self.config.max_recovery_attempts

    def record_recovery_attempt(self) -> None:
        self._loop_recovery_attempts += 1

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "prompt_id": self.prompt_id,
            "state": self._state.value,
            "loop_detected": self.loop_detected,
            "loop_type": self._loop_type.value if self._loop_type else None,
            "loop_recovery_attempts": self._loop_recovery_attempts,
            "last_tool_call_key": self._tool_tracker.last_tool_call_key,
            "tool_call_repetition_count": self._tool_tracker.repetition_count,
            **self._content_tracker.get_current_state(),
            **self._semantic_checker.get_current_state(),
        }
