from __future__ import annotations

from typing import Any, TypeVar

from pydantic import ConfigDict

from loopguard.core.interfaces.model_bases import DomainModel

V = TypeVar("V", bound="ValueObject")


class ValueObject(DomainModel):
    """Base class for value objects.

    Value objects are immutable and compared by their values,
    not their identities.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    def equals(self, other: Any) -> bool:
        """Check if this value object equals another."""
        if not isinstance(other, self.__class__):
            return False

        return self.model_dump() == other.model_dump()

    def to_dict(self) -> dict[str, Any]:
        """Convert this value object to a dictionary."""
        return self.model_dump()

    @classmethod
    def from_dict(cls: type[V], data: dict[str, Any]) -> V:
        """Create a value object from a dictionary."""
        return cls(**data)
