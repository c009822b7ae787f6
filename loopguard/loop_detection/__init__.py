"""
Content loop detection for streamed LLM responses.

This module provides the chanting detector (fixed-size chunk clustering),
the cheap fast-path repetition heuristics and the periodic LLM-based check.
"""

from .content_tracker import ContentLoopTracker
from .fast_path import FastPathThresholds, has_obvious_repetition
from .semantic_check import SemanticLoopChecker

__all__ = [
    "ContentLoopTracker",
    "FastPathThresholds",
    "SemanticLoopChecker",
    "has_obvious_repetition",
]
