"""
Turn loop controller.

Feeds one turn's stream events into a loop detector and converts a detected
loop into an outcome the agent loop can act on: stop the stream, inject a
recovery prompt, or give up once recovery attempts are exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field

from loopguard.core.domain.loop_events import LoopType
from loopguard.core.domain.stream_events import StreamEvent
from loopguard.core.interfaces.loop_detector_interface import ILoopDetector
from loopguard.core.interfaces.model_bases import InternalDTO

logger = logging.getLogger(__name__)


async def _as_async(
    events: AsyncIterable[StreamEvent] | Iterable[StreamEvent],
) -> AsyncIterator[StreamEvent]:
    if isinstance(events, AsyncIterable):
        async for event in events:
            yield event
    else:
        for event in events:
            yield event


@dataclass(frozen=True)
class TurnOutcome(InternalDTO):
    """What happened during one turn."""

    loop_detected: bool
    loop_type: LoopType | None = None
    events_processed: int = 0
    recovery_prompts: list[str] = field(default_factory=list)
    auto_recovery: bool = False
    aborted: bool = False


class TurnLoopController:
    """Runs turns of a single prompt through a loop detector."""

    def __init__(self, detector: ILoopDetector) -> None:
        self.detector = detector
        self.prompt_id: str | None = None

    def begin_prompt(self, prompt_id: str) -> None:
        self.prompt_id = prompt_id
        self.detector.reset(prompt_id)

    async def run_turn(
        self,
        events: AsyncIterable[StreamEvent] | Iterable[StreamEvent],
        abort_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Process one turn, stopping at the first loop signal.

        Raises:
            RuntimeError: ``begin_prompt`` was never called
        """
        if self.prompt_id is None:
            raise RuntimeError("begin_prompt() must be called before run_turn()")

        if await self.detector.turn_started(abort_event):
            return self._loop_outcome(0)

        processed = 0
        async for event in _as_async(events):
            if abort_event is not None and abort_event.is_set():
                return TurnOutcome(
                    loop_detected=False, events_processed=processed, aborted=True
                )
            processed += 1
            if self.detector.add_and_check(event):
                return self._loop_outcome(processed)

        return TurnOutcome(loop_detected=False, events_processed=processed)

    def _loop_outcome(self, processed: int) -> TurnOutcome:
        auto_recovery = self.detector.should_attempt_auto_recovery()
        if auto_recovery:
            self.detector.record_recovery_attempt()
        loop_type = self.detector.loop_type
        logger.warning(
            "Loop detected in prompt %s (%s); auto recovery %s",
            self.prompt_id,
            loop_type.value if loop_type else "unknown",
            "attempted" if auto_recovery else "exhausted",
        )
        return TurnOutcome(
            loop_detected=True,
            loop_type=loop_type,
            events_processed=processed,
            recovery_prompts=self.detector.get_loop_recovery_prompts(),
            auto_recovery=auto_recovery,
        )
