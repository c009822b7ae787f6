from __future__ import annotations

import abc
import asyncio
from typing import Any

from loopguard.core.domain.loop_events import LoopType
from loopguard.core.domain.stream_events import StreamEvent


class ILoopDetector(abc.ABC):
    """
    Interface for a per-session service that decides whether the model is
    stuck repeating itself.
    """

    @abc.abstractmethod
    def add_and_check(self, event: StreamEvent) -> bool:
        """
        Processes one stream event and checks for loop conditions.

        Args:
            event: The next event in arrival order.

        Returns:
            True if a loop has been detected for the current prompt.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def turn_started(self, abort_event: asyncio.Event | None = None) -> bool:
        """
        Signals the start of a new turn and may run the LLM-based check.

        Args:
            abort_event: Set to abandon an in-flight check.

        Returns:
            True if the LLM-based check identified a loop.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def reset(self, prompt_id: str) -> None:
        """
        Clears all detection state. Must be called once per new user prompt
        before any events are fed.
        """
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def loop_type(self) -> LoopType | None:
        """The detector that tripped for the current prompt, if any."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_loop_recovery_prompts(self) -> list[str]:
        """
        Returns recovery suggestions chosen by which detector tripped.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def should_attempt_auto_recovery(self) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def record_recovery_attempt(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def get_stats(self) -> dict[str, Any]:
        """
        Returns a snapshot of the detector's internal state.
        """
        raise NotImplementedError
