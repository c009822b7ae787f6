"""Nominal marker base classes for model standardization.

`DomainModel` marks Pydantic-based configuration and domain models;
`InternalDTO` marks internal dataclass DTOs such as stream events and
telemetry records.
"""

from __future__ import annotations

from pydantic import BaseModel


class DomainModel(BaseModel):
    """Nominal marker for Pydantic-based domain models."""

    def __repr__(self) -> str:
        class_name = self.__class__.__name__
        for attr in ("id", "name", "prompt_id"):
            value = getattr(self, attr, None)
            if value is not None:
                return f'<{class_name} {attr}="{value}">'
        return f"<{class_name}>"


class InternalDTO:
    """Nominal marker for internal dataclass DTOs.

    Mixed into dataclass definitions to make their intent explicit for mypy
    checks.
    """
