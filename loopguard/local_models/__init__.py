"""Helpers for self-hosted inference backends."""

from .detection import (
    DEFAULT_LOCAL_PATTERNS,
    BackendClassification,
    LocalPatternSet,
    classify_backend,
    is_local_model,
)

__all__ = [
    "DEFAULT_LOCAL_PATTERNS",
    "BackendClassification",
    "LocalPatternSet",
    "classify_backend",
    "is_local_model",
]
