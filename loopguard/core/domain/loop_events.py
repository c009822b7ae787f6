"""
Loop detection events.

Defines the loop type taxonomy and the telemetry record emitted whenever a
detector trips.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from loopguard.core.interfaces.model_bases import InternalDTO


class LoopType(str, Enum):
    """Which detector identified the loop."""

    CONSECUTIVE_IDENTICAL_TOOL_CALLS = "consecutive_identical_tool_calls"
    CHANTING_IDENTICAL_SENTENCES = "chanting_identical_sentences"
    LLM_DETECTED_LOOP = "llm_detected_loop"


@dataclass(frozen=True)
class LoopDetectedEvent(InternalDTO):
    """Event triggered when a loop is detected."""

    loop_type: LoopType
    prompt_id: str
    timestamp: float = field(default_factory=time.time)
    reasoning: str | None = None
    confidence: float | None = None
