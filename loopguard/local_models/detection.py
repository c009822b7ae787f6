"""
Local backend classification.

Decides whether an endpoint/model pair refers to a self-hosted inference
server. Matching is a case-insensitive substring test against versioned
pattern data, so callers can pin, extend or replace the heuristics without
touching the code.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass

from loopguard.core.interfaces.model_bases import InternalDTO

OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"


@dataclass(frozen=True)
class LocalPatternSet(InternalDTO):
    """Versioned substrings that mark an endpoint or model as local."""

    version: str
    url_patterns: tuple[str, ...]
    model_patterns: tuple[str, ...]

    def extended(
        self,
        version: str,
        url_patterns: Sequence[str] = (),
        model_patterns: Sequence[str] = (),
    ) -> LocalPatternSet:
        """Return a new pattern set with extra patterns appended."""
        return LocalPatternSet(
            version=version,
            url_patterns=(*self.url_patterns, *url_patterns),
            model_patterns=(*self.model_patterns, *model_patterns),
        )


DEFAULT_LOCAL_PATTERNS = LocalPatternSet(
    version="1",
    url_patterns=(
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "192.168.",
        "10.0.",
        "172.16.",
        "local",
        ":1234",
        ":8080",
        ":11434",  # Ollama default
        ":8000",
    ),
    model_patterns=(
        "local",
        "ollama",
        "llama",
        "mistral",
        "qwen",
        "codellama",
        "vicuna",
        "alpaca",
    ),
)


@dataclass(frozen=True)
class BackendClassification(InternalDTO):
    """Result of classifying an endpoint/model pair."""

    is_local: bool
    matched_url_pattern: str | None = None
    matched_model_pattern: str | None = None
    patterns_version: str | None = None


def _first_match(value: str | None, patterns: Sequence[str]) -> str | None:
    if not value:
        return None
    lowered = value.lower()
    for pattern in patterns:
        if pattern.lower() in lowered:
            return pattern
    return None


def classify_backend(
    base_url: str | None = None,
    model_name: str | None = None,
    patterns: LocalPatternSet = DEFAULT_LOCAL_PATTERNS,
) -> BackendClassification:
    """Classify a backend as local or remote.

    Args:
        base_url: Endpoint URL, may be empty
        model_name: Model identifier, may be empty
        patterns: Pattern data to match against

    Returns:
        The classification, naming the first URL and model patterns that
        matched. Either match alone makes the backend local.
    """
    url_match = _first_match(base_url, patterns.url_patterns)
    model_match = _first_match(model_name, patterns.model_patterns)
    return BackendClassification(
        is_local=url_match is not None or model_match is not None,
        matched_url_pattern=url_match,
        matched_model_pattern=model_match,
        patterns_version=patterns.version,
    )


def is_local_model(
    base_url: str | None = None,
    model: str | None = None,
    patterns: LocalPatternSet = DEFAULT_LOCAL_PATTERNS,
) -> bool:
    """Like ``classify_backend`` but falls back to ``OPENAI_BASE_URL``."""
    url = base_url or os.environ.get(OPENAI_BASE_URL_ENV, "")
    return classify_backend(url, model, patterns).is_local
