"""
OpenAI-compatible inference client.

Talks to any ``/chat/completions`` endpoint (OpenAI itself, vLLM, LM Studio,
Ollama's OpenAI shim, ...). When the endpoint or model looks self-hosted the
client routes every request through a ``LocalModelConcurrencyManager`` and
applies the local sampling defaults.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Mapping
from typing import Any

import httpx
from json_repair import repair_json

from loopguard.core.common.exceptions import (
    BackendError,
    JsonGenerationError,
    RequestAbortedError,
    ServiceUnavailableError,
)
from loopguard.core.domain.backend_type import BackendType
from loopguard.core.domain.configuration.concurrency_config import (
    ConcurrencyConfiguration,
)
from loopguard.core.interfaces.loop_check_client_interface import ILoopCheckClient
from loopguard.core.services.concurrency_manager import LocalModelConcurrencyManager
from loopguard.local_models.capabilities import get_local_model_sampling_params
from loopguard.local_models.detection import BackendClassification, classify_backend

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0


class ConversationHistory:
    """Turn history in ``{"role", "parts": [{"text"}]}`` form."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._entries: list[dict[str, Any]] = []
        self._max_entries = max_entries

    def add(self, role: str, text: str) -> None:
        self._entries.append({"role": role, "parts": [{"text": text}]})
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            del self._entries[: len(self._entries) - self._max_entries]

    def add_user(self, text: str) -> None:
        self.add("user", text)

    def add_model(self, text: str) -> None:
        self.add("model", text)

    def entries(self) -> list[dict[str, Any]]:
        return [dict(entry) for entry in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def to_openai_messages(contents: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Convert ``{role, parts}`` entries into chat-completions messages."""
    messages: list[dict[str, str]] = []
    for entry in contents:
        role = entry.get("role", "user")
        if role == "model":
            role = "assistant"
        if "parts" in entry:
            text = "".join(
                str(part.get("text", ""))
                for part in entry["parts"]
                if isinstance(part, Mapping)
            )
        else:
            text = str(entry.get("content", ""))
        messages.append({"role": role, "content": text})
    return messages


class OpenAICompatibleClient(ILoopCheckClient):
    """Chat-completions client with local backend awareness."""

    backend_type = BackendType.OPENAI_COMPATIBLE

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        concurrency_config: ConcurrencyConfiguration | None = None,
        history: ConversationHistory | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._owns_client = http_client is None
        self.history = history or ConversationHistory()

        self.classification: BackendClassification = classify_backend(
            self.base_url, self.model
        )
        self.concurrency_manager: LocalModelConcurrencyManager | None = None
        if self.classification.is_local:
            self.concurrency_manager = LocalModelConcurrencyManager(
                concurrency_config or LocalModelConcurrencyManager.get_optimal_config()
            )

        logger.info(
            "OpenAICompatibleClient for %s (model=%s, local=%s)",
            self.base_url,
            self.model,
            self.classification.is_local,
        )

    @property
    def is_local(self) -> bool:
        return self.classification.is_local

    def get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_sampling_params(
        self, overrides: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Local defaults (if applicable) overlaid with explicit parameters."""
        params: dict[str, Any] = {}
        if self.is_local:
            params.update(get_local_model_sampling_params())
        if overrides:
            params.update({k: v for k, v in overrides.items() if v is not None})
        return params

    async def chat(
        self,
        messages: list[dict[str, Any]],
        abort_event: asyncio.Event | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        """Send a chat-completions request and return the decoded response body.

        Raises:
            ServiceUnavailableError: The backend could not be reached
            BackendError: The backend answered with an error status
            ConcurrencyError: The local gate rejected the request
        """
        payload = {
            "model": params.pop("model", None) or self.model,
            "messages": messages,
            **self.build_sampling_params(params),
        }

        async def send() -> dict[str, Any]:
            return await self._post("/chat/completions", payload, abort_event)

        if self.concurrency_manager is None:
            return await send()
        return await self.concurrency_manager.execute_request(
            f"chat-{uuid.uuid4().hex[:12]}", send, abort_event
        )

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        abort_event: asyncio.Event | None,
    ) -> dict[str, Any]:
        if abort_event is not None and abort_event.is_set():
            raise RequestAbortedError()

        url = f"{self.base_url}{path}"
        try:
            response = await self.client.post(
                url, json=payload, headers=self.get_headers()
            )
        except httpx.RequestError as e:
            raise ServiceUnavailableError(
                message=f"Could not connect to backend ({e})",
                backend_name=self.backend_type.value,
            ) from e

        if response.status_code >= 400:
            try:
                detail: Any = response.json()
            except ValueError:
                detail = response.text
            raise BackendError(
                message=f"Backend returned HTTP {response.status_code}",
                backend_name=self.backend_type.value,
                details={"status_code": response.status_code, "response": detail},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(
                message="Backend returned a non-JSON body",
                backend_name=self.backend_type.value,
            ) from e
        if not isinstance(data, dict):
            raise BackendError(
                message="Backend returned an unexpected body",
                backend_name=self.backend_type.value,
            )
        return data

    def get_history(self) -> list[dict[str, Any]]:
        return self.history.entries()

    async def generate_json(
        self,
        contents: list[dict[str, Any]],
        schema: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        """Ask for a JSON object matching ``schema`` and decode the reply.

        Raises:
            JsonGenerationError: The request failed or the reply is not a
                JSON object
        """
        instruction = (
            "Respond only with a JSON object that conforms to this JSON schema:\n"
            + json.dumps(schema)
        )
        messages = [
            {"role": "system", "content": instruction},
            *to_openai_messages(contents),
        ]
        try:
            data = await self.chat(
                messages,
                abort_event,
                model=model,
                temperature=0,
                response_format={"type": "json_object"},
            )
        except BackendError as e:
            raise JsonGenerationError(
                message=f"JSON generation request failed: {e.message}",
                backend_name=self.backend_type.value,
                details=e.details,
            ) from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise JsonGenerationError(
                message="Response has no message content",
                backend_name=self.backend_type.value,
            ) from e

        return self._parse_json_object(content)

    def _parse_json_object(self, content: Any) -> dict[str, Any]:
        if not isinstance(content, str) or not content.strip():
            raise JsonGenerationError(
                message="Response content is empty",
                backend_name=self.backend_type.value,
            )
        try:
            parsed = json.loads(repair_json(content))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise JsonGenerationError(
                message="Response content is not valid JSON",
                backend_name=self.backend_type.value,
            ) from e
        if not isinstance(parsed, dict):
            raise JsonGenerationError(
                message="Response content is not a JSON object",
                backend_name=self.backend_type.value,
                details={"content": content[:200]},
            )
        return parsed

    async def aclose(self) -> None:
        if self.concurrency_manager is not None:
            self.concurrency_manager.clear_queue()
        if self._owns_client:
            await self.client.aclose()
