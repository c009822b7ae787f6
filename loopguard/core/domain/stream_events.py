"""
Stream events fed to the loop detector.

The turn loop converts each item of a model's streaming response into one
of these events and hands them to the detector in arrival order.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from loopguard.core.interfaces.model_bases import InternalDTO


class StreamEventType(str, Enum):
    """Kinds of events emitted by a model response stream."""

    TOOL_CALL_REQUEST = "tool_call_request"
    CONTENT = "content"
    TURN_BOUNDARY = "turn_boundary"
    FINISHED = "finished"


@dataclass(frozen=True)
class ToolCallRequestEvent(InternalDTO):
    """The model asked to invoke a tool.

    ``args`` is either the decoded argument mapping or the raw JSON string as
    delivered by OpenAI-style backends.
    """

    type: ClassVar[StreamEventType] = StreamEventType.TOOL_CALL_REQUEST

    name: str
    args: Mapping[str, Any] | str = field(default_factory=dict)
    call_id: str | None = None


@dataclass(frozen=True)
class ContentEvent(InternalDTO):
    """A chunk of streamed assistant text."""

    type: ClassVar[StreamEventType] = StreamEventType.CONTENT

    text: str


@dataclass(frozen=True)
class TurnBoundaryEvent(InternalDTO):
    """Marks the start of a new model response stream within the prompt."""

    type: ClassVar[StreamEventType] = StreamEventType.TURN_BOUNDARY


@dataclass(frozen=True)
class FinishedEvent(InternalDTO):
    """The backend finished the current response."""

    type: ClassVar[StreamEventType] = StreamEventType.FINISHED

    reason: str | None = None


StreamEvent = Union[ToolCallRequestEvent, ContentEvent, TurnBoundaryEvent, FinishedEvent]
