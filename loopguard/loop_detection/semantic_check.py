"""
LLM-based ("semantic") loop check.

Once a prompt has run for many turns, the recent conversation is sent back to
the model with a diagnostic instruction asking how confident it is that the
conversation is stuck. High confidence declares a loop; otherwise the
confidence decides how long to wait before asking again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass
from typing import Any

from loopguard.core.interfaces.loop_check_client_interface import ILoopCheckClient
from loopguard.core.interfaces.model_bases import InternalDTO

logger = logging.getLogger(__name__)

LLM_LOOP_CHECK_HISTORY_COUNT = 20
LLM_CHECK_AFTER_TURNS = 30
DEFAULT_LLM_CHECK_INTERVAL = 3
MIN_LLM_CHECK_INTERVAL = 5
MAX_LLM_CHECK_INTERVAL = 15
LLM_LOOP_CONFIDENCE_THRESHOLD = 0.9

LOOP_DIAGNOSTIC_PROMPT = """You are a sophisticated AI diagnostic agent specializing in identifying when a conversational AI is stuck in an unproductive state. Your task is to analyze the provided conversation history and determine if the assistant has ceased to make meaningful progress.

An unproductive state is characterized by one or more of the following patterns over the last 5 or more assistant turns:

Repetitive Actions: The assistant repeats the same tool calls or conversational responses a decent number of times. This includes simple loops (e.g., tool_A, tool_A, tool_A) and alternating patterns (e.g., tool_A, tool_B, tool_A, tool_B, ...).

Cognitive Loop: The assistant seems unable to determine the next logical step. It might express confusion, repeatedly ask the same questions, or generate responses that don't logically follow from the previous turns, indicating it's stuck and not advancing the task.

Crucially, differentiate between a true unproductive state and legitimate, incremental progress.
For example, a series of 'tool_A' or 'tool_B' tool calls that make small, distinct changes to the same file (like adding docstrings to functions one by one) is considered forward progress and is NOT a loop. A loop would be repeatedly replacing the same text with the same content, or cycling between a small set of files with no net change.

Please analyze the conversation history to determine the possibility that the conversation is stuck in a repetitive, non-productive state."""

LOOP_CHECK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": (
                "Your reasoning on if the conversation is looping without "
                "forward progress."
            ),
        },
        "confidence": {
            "type": "number",
            "description": (
                "A number between 0.0 and 1.0 representing your confidence "
                "that the conversation is in an unproductive state."
            ),
        },
    },
    "required": ["reasoning", "confidence"],
}


@dataclass(frozen=True)
class SemanticCheckResult(InternalDTO):
    """Outcome of one LLM-based loop check."""

    is_loop: bool
    confidence: float | None = None
    reasoning: str | None = None


def interval_for_confidence(
    confidence: float,
    min_interval: int = MIN_LLM_CHECK_INTERVAL,
    max_interval: int = MAX_LLM_CHECK_INTERVAL,
) -> int:
    """Map confidence linearly onto the check interval (high confidence checks sooner)."""
    clamped = min(1.0, max(0.0, confidence))
    # Halves round up.
    return math.floor(
        min_interval + (max_interval - min_interval) * (1 - clamped) + 0.5
    )


class SemanticLoopChecker:
    """Schedules and runs the LLM-based loop check for one prompt at a time."""

    def __init__(
        self,
        client: ILoopCheckClient | None,
        *,
        check_after_turns: int = LLM_CHECK_AFTER_TURNS,
        history_count: int = LLM_LOOP_CHECK_HISTORY_COUNT,
        default_interval: int = DEFAULT_LLM_CHECK_INTERVAL,
        min_interval: int = MIN_LLM_CHECK_INTERVAL,
        max_interval: int = MAX_LLM_CHECK_INTERVAL,
        confidence_threshold: float = LLM_LOOP_CONFIDENCE_THRESHOLD,
        model: str | None = None,
    ) -> None:
        self.client = client
        self.check_after_turns = check_after_turns
        self.history_count = history_count
        self.default_interval = default_interval
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.confidence_threshold = confidence_threshold
        self.model = model

        self.turns_in_current_prompt = 0
        self.llm_check_interval = default_interval
        self.last_check_turn = 0

    def reset(self) -> None:
        self.turns_in_current_prompt = 0
        self.llm_check_interval = self.default_interval
        self.last_check_turn = 0

    def record_turn(self) -> bool:
        """Count a turn and report whether a check is due now.

        When a check is due the turn is recorded as the last check turn
        immediately, so an abandoned check still waits a full interval.
        """
        self.turns_in_current_prompt += 1
        if (
            self.turns_in_current_prompt >= self.check_after_turns
            and self.turns_in_current_prompt - self.last_check_turn
            >= self.llm_check_interval
        ):
            self.last_check_turn = self.turns_in_current_prompt
            return True
        return False

    def build_contents(self, client: ILoopCheckClient) -> list[dict[str, Any]]:
        history = list(client.get_history())
        recent = history[-self.history_count :] if self.history_count else []
        return [
            *recent,
            {"role": "user", "parts": [{"text": LOOP_DIAGNOSTIC_PROMPT}]},
        ]

    async def query(
        self, abort_event: asyncio.Event | None = None
    ) -> dict[str, Any] | None:
        """Run the model call, returning None if it failed or was aborted."""
        client = self.client
        if client is None:
            return None

        try:
            contents = self.build_contents(client)
            call = asyncio.ensure_future(
                client.generate_json(
                    contents, LOOP_CHECK_SCHEMA, abort_event, self.model
                )
            )
        except Exception as exc:
            logger.debug("LLM loop check could not start: %s", exc, exc_info=True)
            return None

        if abort_event is None:
            waiter = None
        else:
            waiter = asyncio.ensure_future(abort_event.wait())

        try:
            if waiter is not None:
                await asyncio.wait(
                    {call, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if not call.done():
                    call.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await call
                    logger.debug("LLM loop check aborted")
                    return None
            return await call
        except asyncio.CancelledError:
            call.cancel()
            raise
        except Exception as exc:
            logger.debug("LLM loop check failed: %s", exc, exc_info=True)
            return None
        finally:
            if waiter is not None and not waiter.done():
                waiter.cancel()

    def evaluate(self, result: dict[str, Any] | None) -> SemanticCheckResult:
        """Interpret a ``{reasoning, confidence}`` response and adapt the interval."""
        if not isinstance(result, dict):
            return SemanticCheckResult(is_loop=False)

        confidence = result.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            return SemanticCheckResult(is_loop=False)

        reasoning = result.get("reasoning")
        reasoning = reasoning if isinstance(reasoning, str) else None

        if confidence > self.confidence_threshold:
            return SemanticCheckResult(
                is_loop=True, confidence=float(confidence), reasoning=reasoning
            )

        self.llm_check_interval = interval_for_confidence(
            float(confidence), self.min_interval, self.max_interval
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "LLM loop check confidence %.2f; next check in %d turns",
                confidence,
                self.llm_check_interval,
            )
        return SemanticCheckResult(
            is_loop=False, confidence=float(confidence), reasoning=reasoning
        )

    def get_current_state(self) -> dict[str, Any]:
        return {
            "turns_in_current_prompt": self.turns_in_current_prompt,
            "llm_check_interval": self.llm_check_interval,
            "last_check_turn": self.last_check_turn,
        }
