"""Tool call tracker for detecting consecutive identical tool calls.

Every call is reduced to a fingerprint: a SHA-256 over the tool name and a
canonical (sorted-key) JSON rendering of its arguments. The tracker only
remembers the most recent fingerprint and how many times in a row it has
been seen.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from json_repair import repair_json

from loopguard.core.interfaces.model_bases import InternalDTO
from loopguard.tool_call_loop.config import ToolCallLoopConfig

logger = logging.getLogger(__name__)


def canonicalize_arguments(arguments: Mapping[str, Any] | str | None) -> str:
    """Render tool arguments as deterministic JSON.

    Mappings are dumped with sorted keys. Strings are treated as (possibly
    malformed) JSON: they are repaired, parsed and re-dumped; if that still
    fails the raw string is used as-is.
    """
    if arguments is None:
        return "{}"

    if isinstance(arguments, str):
        try:
            repaired = repair_json(arguments)
            parsed = json.loads(repaired)
        except (json.JSONDecodeError, TypeError, ValueError):
            return arguments
        if parsed == "" and arguments.strip():
            return arguments
        return json.dumps(parsed, sort_keys=True, separators=(",", ":"), default=str)

    return json.dumps(
        arguments, sort_keys=True, separators=(",", ":"), default=str
    )


@dataclass(frozen=True)
class ToolCallSignature(InternalDTO):
    """Fingerprint of a single tool call."""

    tool_name: str
    arguments_signature: str
    fingerprint: str

    @classmethod
    def from_tool_call(
        cls, tool_name: str, arguments: Mapping[str, Any] | str | None
    ) -> ToolCallSignature:
        """Create a signature from a tool call.

        Args:
            tool_name: Name of the tool being called
            arguments: Argument mapping or JSON string of the tool arguments

        Returns:
            A ToolCallSignature with a stable SHA-256 fingerprint
        """
        canonical_args = canonicalize_arguments(arguments)
        key = f"{tool_name}:{canonical_args}"
        return cls(
            tool_name=tool_name,
            arguments_signature=canonical_args,
            fingerprint=hashlib.sha256(key.encode("utf-8")).hexdigest(),
        )


class ToolCallTracker:
    """Counts consecutive repeats of the same tool call fingerprint."""

    def __init__(self, config: ToolCallLoopConfig | None = None) -> None:
        self.config = config or ToolCallLoopConfig()
        self.last_tool_call_key: str | None = None
        self.repetition_count = 0

    def track_tool_call(
        self, tool_name: str, arguments: Mapping[str, Any] | str | None
    ) -> bool:
        """Record a tool call and report whether it completes a loop.

        Args:
            tool_name: Name of the tool being called
            arguments: Argument mapping or JSON string

        Returns:
            True once the same fingerprint has been seen ``max_repeats`` times
            in a row.
        """
        if not self.config.enabled:
            return False

        signature = ToolCallSignature.from_tool_call(tool_name, arguments)

        if signature.fingerprint == self.last_tool_call_key:
            self.repetition_count += 1
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "Repeated tool call: %s (count: %d)",
                    tool_name,
                    self.repetition_count,
                )
        else:
            self.last_tool_call_key = signature.fingerprint
            self.repetition_count = 1

        return self.is_loop()

    def is_loop(self) -> bool:
        return self.repetition_count >= self.config.max_repeats

    def reset(self) -> None:
        self.last_tool_call_key = None
        self.repetition_count = 0

    def format_loop_reason(self, tool_name: str) -> str:
        """Human-readable explanation for a detected tool call loop."""
        return (
            f"Tool call loop detected: '{tool_name}' invoked with identical "
            f"parameters {self.repetition_count} times in a row. "
            f"Try changing your inputs or approach."
        )
