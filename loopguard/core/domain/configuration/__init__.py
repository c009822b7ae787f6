"""Configuration domain package exports."""

from __future__ import annotations

from .concurrency_config import ConcurrencyConfiguration
from .loop_detection_config import LoopDetectionConfiguration

ConcurrencyConfig = ConcurrencyConfiguration
LoopDetectionConfig = LoopDetectionConfiguration

__all__ = [
    "ConcurrencyConfig",
    "ConcurrencyConfiguration",
    "LoopDetectionConfig",
    "LoopDetectionConfiguration",
]
