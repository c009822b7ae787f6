from __future__ import annotations

import abc
import asyncio
from typing import Any


class ILoopCheckClient(abc.ABC):
    """
    Model client used by the LLM-based loop check.
    """

    @abc.abstractmethod
    def get_history(self) -> list[dict[str, Any]]:
        """
        Returns the conversation so far, oldest entry first.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def generate_json(
        self,
        contents: list[dict[str, Any]],
        schema: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        """
        Asks the model for a JSON object matching ``schema``.

        Raises:
            JsonGenerationError: The call failed or returned unusable output.
        """
        raise NotImplementedError
