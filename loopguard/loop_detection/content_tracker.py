"""
Content loop ("chanting") detection over a live response stream.

Text is cut into overlapping fixed-size chunks. A loop is reported when one
chunk keeps reappearing at short, regular gaps. Markdown structure (tables,
lists, headings, quotes) restarts tracking, and fenced code is ignored, since
both legitimately repeat.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from loopguard.loop_detection.fast_path import (
    FastPathThresholds,
    has_obvious_repetition,
)

logger = logging.getLogger(__name__)

CONTENT_LOOP_THRESHOLD = 4
CONTENT_CHUNK_SIZE = 20
MAX_HISTORY_LENGTH = 1000  # characters
MAX_CHUNK_DISTANCE_FACTOR = 2.0

CODE_FENCE = "```"
_FENCED_SPAN = re.compile(r"```.*?```", re.DOTALL)

_TABLE_PATTERN = re.compile(r"^\s*(\|.*\||[|+-]{3,})", re.MULTILINE)
_LIST_ITEM_PATTERN = re.compile(r"^\s*(?:[*+-]|\d+\.)\s", re.MULTILINE)
_HEADING_PATTERN = re.compile(r"^#+\s", re.MULTILINE)
_BLOCKQUOTE_PATTERN = re.compile(r"^>\s", re.MULTILINE)

_STRUCTURE_PATTERNS = (
    _TABLE_PATTERN,
    _LIST_ITEM_PATTERN,
    _HEADING_PATTERN,
    _BLOCKQUOTE_PATTERN,
)


def has_markdown_structure(content: str) -> bool:
    """Tables, list items, headings and blockquotes produce repetitive syntax."""
    return any(pattern.search(content) for pattern in _STRUCTURE_PATTERNS)


class ContentLoopTracker:
    """
    Tracks streamed text and detects tight repetition of fixed-size chunks.

    ``content_stats`` maps the SHA-256 of each chunk to the ordered offsets
    at which it was seen in ``stream_content_history``. Offsets always index
    the current (possibly truncated) history.
    """

    def __init__(
        self,
        content_loop_threshold: int = CONTENT_LOOP_THRESHOLD,
        content_chunk_size: int = CONTENT_CHUNK_SIZE,
        max_history_length: int = MAX_HISTORY_LENGTH,
        max_chunk_distance_factor: float = MAX_CHUNK_DISTANCE_FACTOR,
        fast_path: FastPathThresholds | None = None,
    ) -> None:
        """
        Args:
            content_loop_threshold: Repeats of one chunk that make a loop
            content_chunk_size: Chunk width in characters
            max_history_length: Characters of history kept
            max_chunk_distance_factor: Largest mean gap between repeats, in chunk widths
            fast_path: Thresholds for the obvious-repetition checks
        """
        self.content_loop_threshold = content_loop_threshold
        self.content_chunk_size = content_chunk_size
        self.max_history_length = max_history_length
        self.max_chunk_distance_factor = max_chunk_distance_factor
        self.fast_path = fast_path or FastPathThresholds()

        self.stream_content_history = ""
        self.content_stats: dict[str, list[int]] = {}
        self.last_content_index = 0
        self.in_code_block = False

    def check_content_loop(self, content: str) -> bool:
        """Feed one streamed text chunk; True when it completes a chanting loop.

        Markdown structure and code fences restart tracking. Text inside a
        fenced block is never analysed. Everything else is appended to the
        history and checked first by the fast path, then chunk by chunk.
        """
        if not content:
            return False

        fences = content.count(CODE_FENCE)
        if fences or has_markdown_structure(content):
            self.reset_tracking()

        was_in_code_block = self.in_code_block
        if fences % 2 == 1:
            self.in_code_block = not self.in_code_block
        if was_in_code_block or self.in_code_block:
            return False
        # Only text outside complete fenced blocks is analysed.
        if fences:
            content = _FENCED_SPAN.sub("", content)
            if not content:
                return False

        before = self.stream_content_history
        self.stream_content_history += content

        obvious = has_obvious_repetition(content, before, self.fast_path)

        self._trim_history()
        if obvious:
            return True
        return self._scan_new_chunks()

    def _trim_history(self) -> None:
        """Drop the oldest text past ``max_history_length`` and shift offsets to match."""
        overflow = len(self.stream_content_history) - self.max_history_length
        if overflow <= 0:
            return

        self.stream_content_history = self.stream_content_history[overflow:]
        self.last_content_index = max(0, self.last_content_index - overflow)

        for fingerprint, offsets in list(self.content_stats.items()):
            shifted = [offset - overflow for offset in offsets if offset >= overflow]
            if shifted:
                self.content_stats[fingerprint] = shifted
            else:
                del self.content_stats[fingerprint]

    def _scan_new_chunks(self) -> bool:
        size = self.content_chunk_size
        while self.last_content_index + size <= len(self.stream_content_history):
            start = self.last_content_index
            chunk = self.stream_content_history[start : start + size]
            fingerprint = hashlib.sha256(chunk.encode("utf-8")).hexdigest()

            if self._record_chunk(chunk, fingerprint):
                if logger.isEnabledFor(logging.WARNING):
                    logger.warning(
                        "Chanting detected: %d-char chunk repeated %d times in close succession",
                        size,
                        self.content_loop_threshold,
                    )
                return True

            self.last_content_index += 1

        return False

    def _record_chunk(self, chunk: str, fingerprint: str) -> bool:
        """Store the chunk's offset and test its latest repeats for clustering.

        A fingerprint hit only counts when the text at the first recorded
        offset really equals ``chunk``.
        """
        offsets = self.content_stats.get(fingerprint)
        if offsets is None:
            self.content_stats[fingerprint] = [self.last_content_index]
            return False

        first = offsets[0]
        if self.stream_content_history[first : first + self.content_chunk_size] != chunk:
            return False

        offsets.append(self.last_content_index)
        if len(offsets) < self.content_loop_threshold:
            return False

        recent = offsets[-self.content_loop_threshold :]
        mean_gap = (recent[-1] - recent[0]) / (self.content_loop_threshold - 1)
        return mean_gap <= self.content_chunk_size * self.max_chunk_distance_factor

    def reset_tracking(self, reset_history: bool = True) -> None:
        """Forget recorded chunks; the code block flag is kept."""
        if reset_history:
            self.stream_content_history = ""
        self.content_stats.clear()
        self.last_content_index = 0

    def reset(self) -> None:
        self.reset_tracking(reset_history=True)
        self.in_code_block = False

    def get_current_state(self) -> dict[str, Any]:
        return {
            "stream_content_history_length": len(self.stream_content_history),
            "last_content_index": self.last_content_index,
            "in_code_block": self.in_code_block,
            "content_stats_size": len(self.content_stats),
        }
