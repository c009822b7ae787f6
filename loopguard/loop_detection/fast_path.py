"""
Cheap repetition heuristics checked before the sliding-window analysis.

These catch degenerate output (one character hammered over and over, broken
bold-quote runs, walls of quotes and asterisks) without waiting for enough
history to accumulate for chunk clustering.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache

from loopguard.core.interfaces.model_bases import InternalDTO

logger = logging.getLogger(__name__)

# Markdown punctuation and whitespace legitimately repeat (rules, ellipses,
# emphasis), so runs of these never count.
_IGNORED_REPEAT_CHARS = r"#\-*_=\s.,'\"()"

BROKEN_QUOTE_PATTERN = re.compile(r'(\*\*")+\*\*"(\*\*")+')


@lru_cache(maxsize=16)
def _char_repeat_pattern(threshold: int) -> re.Pattern[str]:
    return re.compile(rf"([^{_IGNORED_REPEAT_CHARS}])\1{{{threshold - 1},}}")


@dataclass(frozen=True)
class FastPathThresholds(InternalDTO):
    """Tunable limits for the obvious-repetition checks."""

    char_repeat_threshold: int = 16
    recent_history_window: int = 300
    dense_markup_min_length: int = 100
    dense_markup_ratio: float = 0.6


def find_character_run(text: str, threshold: int) -> str | None:
    """Return the first run of ``threshold`` identical non-markdown characters."""
    match = _char_repeat_pattern(threshold).search(text)
    return match.group(0) if match else None


def has_broken_quote_repetition(text: str) -> bool:
    return BROKEN_QUOTE_PATTERN.search(text) is not None


def is_dense_quote_and_emphasis(
    text: str, min_length: int = 100, ratio: float = 0.6
) -> bool:
    """Both quote and asterisk counts exceed ``ratio`` of a long text."""
    if len(text) <= min_length:
        return False
    limit = len(text) * ratio
    return text.count('"') > limit and text.count("*") > limit


def has_obvious_repetition(
    chunk: str,
    previous_history: str,
    thresholds: FastPathThresholds | None = None,
) -> bool:
    """Check ``chunk`` and the recent-history window ending with it.

    Args:
        chunk: Newly streamed text
        previous_history: Content history before ``chunk`` was appended
        thresholds: Heuristic limits

    Returns:
        True if any fast-path heuristic flags the text.
    """
    limits = thresholds or FastPathThresholds()

    texts = [chunk]
    if previous_history:
        window = previous_history[-limits.recent_history_window :]
        texts.append(window + chunk)

    for text in texts:
        run = find_character_run(text, limits.char_repeat_threshold)
        if run is not None:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Character repetition detected: %r", run[:40])
            return True

        if has_broken_quote_repetition(text):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Broken quote repetition detected")
            return True

        if is_dense_quote_and_emphasis(
            text, limits.dense_markup_min_length, limits.dense_markup_ratio
        ):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Dense quote/emphasis repetition detected")
            return True

    return False
