"""
llm-loop-guard: loop detection and local-model concurrency control for
interactive LLM agents.
"""

from loopguard.core.services.concurrency_manager import LocalModelConcurrencyManager
from loopguard.core.services.loop_detection_service import LoopDetectionService
from loopguard.local_models.detection import classify_backend, is_local_model

__version__ = "0.1.0"

__all__ = [
    "LocalModelConcurrencyManager",
    "LoopDetectionService",
    "classify_backend",
    "is_local_model",
]
