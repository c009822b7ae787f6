from __future__ import annotations

from enum import Enum


class BackendType(str, Enum):
    """Enum for supported backend types."""

    GEMINI = "gemini"
    VERTEX_AI = "vertex-ai"
    OPENAI_COMPATIBLE = "openai"
    ANTHROPIC = "anthropic"


# Backends whose structured JSON generation is reliable enough for the
# semantic loop check. OpenAI-compatible servers (including every local
# runtime reached through that API) are excluded.
JSON_GENERATION_SUPPORT: dict[BackendType, bool] = {
    BackendType.GEMINI: True,
    BackendType.VERTEX_AI: True,
    BackendType.OPENAI_COMPATIBLE: False,
    BackendType.ANTHROPIC: True,
}


def supports_json_generation(backend_type: BackendType | str | None) -> bool:
    """Return whether the semantic loop check may run against ``backend_type``.

    Unknown backend types are treated as supported; ``None`` means the caller
    did not declare a backend and also defaults to supported.
    """
    if backend_type is None:
        return True
    try:
        resolved = BackendType(backend_type)
    except ValueError:
        return True
    return JSON_GENERATION_SUPPORT.get(resolved, True)
