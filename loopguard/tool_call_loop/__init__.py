"""Detection of consecutive identical tool calls."""

from .config import ToolCallLoopConfig
from .tracker import ToolCallSignature, ToolCallTracker

__all__ = ["ToolCallLoopConfig", "ToolCallSignature", "ToolCallTracker"]
