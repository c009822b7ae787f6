"""
Tests for LoopDetectionService.

This module tests the per-session detector: event dispatch, the sticky loop
state, recovery bookkeeping and the LLM-based check.
"""

import asyncio
from typing import Any
from unittest.mock import Mock

import pytest
from loopguard.core.domain.backend_type import BackendType
from loopguard.core.domain.configuration.loop_detection_config import (
    LoopDetectionConfiguration,
)
from loopguard.core.domain.loop_events import LoopType
from loopguard.core.domain.stream_events import (
    ContentEvent,
    FinishedEvent,
    ToolCallRequestEvent,
    TurnBoundaryEvent,
)
from loopguard.core.interfaces.loop_check_client_interface import ILoopCheckClient
from loopguard.core.services.loop_detection_service import (
    BASE_RECOVERY_PROMPTS,
    CONTENT_RECOVERY_PROMPTS,
    TOOL_CALL_RECOVERY_PROMPTS,
    DetectorState,
    LoopDetectionService,
)
from loopguard.core.services.telemetry import RecordingTelemetrySink

PHRASE = "abcdefghijklmnopqrst"


class FakeLoopCheckClient(ILoopCheckClient):
    def __init__(self, confidence: float = 0.0) -> None:
        self.confidence = confidence
        self.calls = 0
        self.gate: asyncio.Event | None = None

    def get_history(self) -> list[dict[str, Any]]:
        return [{"role": "user", "parts": [{"text": "fix the bug"}]}]

    async def generate_json(self, contents, schema, abort_event=None, model=None):  # type: ignore[no-untyped-def]
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return {"reasoning": "stuck on the same file", "confidence": self.confidence}


def _tool_call(path: str = "a.py") -> ToolCallRequestEvent:
    return ToolCallRequestEvent(name="read_file", args={"path": path})


class TestEventDispatch:
    """Tests for add_and_check."""

    @pytest.fixture
    def service(
        self, offline_config: LoopDetectionConfiguration, telemetry: RecordingTelemetrySink
    ) -> LoopDetectionService:
        service = LoopDetectionService(offline_config, telemetry=telemetry)
        service.reset("prompt-1")
        return service

    def test_tool_call_loop_on_fifth_call(
        self, service: LoopDetectionService, telemetry: RecordingTelemetrySink
    ) -> None:
        results = [service.add_and_check(_tool_call()) for _ in range(5)]
        assert results == [False, False, False, False, True]
        assert service.loop_type is LoopType.CONSECUTIVE_IDENTICAL_TOOL_CALLS
        assert len(telemetry.events) == 1
        assert telemetry.events[0].prompt_id == "prompt-1"

    def test_content_between_tool_calls_does_not_break_the_streak(
        self, service: LoopDetectionService
    ) -> None:
        for _ in range(4):
            assert service.add_and_check(_tool_call()) is False
            assert service.add_and_check(ContentEvent("Reading the file again.")) is False
        assert service.add_and_check(_tool_call()) is True

    def test_chanting_detected(
        self, service: LoopDetectionService, telemetry: RecordingTelemetrySink
    ) -> None:
        assert service.add_and_check(ContentEvent(PHRASE * 4)) is True
        assert service.loop_type is LoopType.CHANTING_IDENTICAL_SENTENCES
        assert telemetry.events[0].loop_type is LoopType.CHANTING_IDENTICAL_SENTENCES

    def test_tool_call_resets_content_tracking(self, service: LoopDetectionService) -> None:
        service.add_and_check(ContentEvent(PHRASE * 3))
        service.add_and_check(_tool_call())
        assert service.add_and_check(ContentEvent(PHRASE)) is False
        assert service.get_stats()["stream_content_history_length"] == len(PHRASE)

    def test_turn_boundary_resets_content_without_signalling(
        self, service: LoopDetectionService
    ) -> None:
        service.add_and_check(ContentEvent(PHRASE * 3))
        assert service.add_and_check(TurnBoundaryEvent()) is False
        assert service.add_and_check(ContentEvent(PHRASE)) is False

    def test_finished_event_is_ignored(self, service: LoopDetectionService) -> None:
        assert service.add_and_check(FinishedEvent("stop")) is False
        assert service.state is DetectorState.TRACKING

    def test_loop_is_sticky_until_reset(
        self, service: LoopDetectionService, telemetry: RecordingTelemetrySink
    ) -> None:
        service.add_and_check(ContentEvent(PHRASE * 4))
        assert service.add_and_check(ContentEvent("fresh text")) is True
        assert service.add_and_check(_tool_call("other.py")) is True
        assert len(telemetry.events) == 1

        service.reset("prompt-2")
        assert service.state is DetectorState.IDLE
        assert service.loop_type is None
        assert service.add_and_check(ContentEvent("fresh text")) is False

    def test_state_transitions(self, service: LoopDetectionService) -> None:
        assert service.state is DetectorState.IDLE
        service.add_and_check(ContentEvent("hello"))
        assert service.state is DetectorState.TRACKING
        service.add_and_check(ContentEvent(PHRASE * 4))
        assert service.state is DetectorState.LOOP_CONFIRMED

    def test_handler_errors_mean_no_loop(self, service: LoopDetectionService) -> None:
        service._content_tracker.check_content_loop = Mock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]
        assert service.add_and_check(ContentEvent("anything")) is False
        assert service.loop_detected is False

    def test_telemetry_failure_is_contained(
        self, offline_config: LoopDetectionConfiguration
    ) -> None:
        sink = Mock()
        sink.log_loop_detected.side_effect = RuntimeError("sink down")
        service = LoopDetectionService(offline_config, telemetry=sink)
        service.reset("p")
        assert service.add_and_check(ContentEvent(PHRASE * 4)) is True
        sink.log_loop_detected.assert_called_once()

    def test_disabled_detector_never_reports(self) -> None:
        service = LoopDetectionService(
            LoopDetectionConfiguration(enabled=False), telemetry=RecordingTelemetrySink()
        )
        service.reset("p")
        assert not any(service.add_and_check(_tool_call()) for _ in range(10))
        assert service.add_and_check(ContentEvent(PHRASE * 4)) is False

    def test_configured_tool_threshold(self, telemetry: RecordingTelemetrySink) -> None:
        service = LoopDetectionService(
            LoopDetectionConfiguration(llm_check_enabled=False, tool_call_loop_threshold=3),
            telemetry=telemetry,
        )
        service.reset("p")
        assert [service.add_and_check(_tool_call()) for _ in range(3)] == [
            False,
            False,
            True,
        ]


class TestRecovery:
    """Tests for recovery prompts and attempt bookkeeping."""

    @pytest.fixture
    def service(
        self, offline_config: LoopDetectionConfiguration, telemetry: RecordingTelemetrySink
    ) -> LoopDetectionService:
        service = LoopDetectionService(offline_config, telemetry=telemetry)
        service.reset("p")
        return service

    def test_tool_call_prompts(self, service: LoopDetectionService) -> None:
        for _ in range(5):
            service.add_and_check(_tool_call())
        assert service.get_loop_recovery_prompts() == [
            *BASE_RECOVERY_PROMPTS,
            *TOOL_CALL_RECOVERY_PROMPTS,
        ]

    def test_content_prompts(self, service: LoopDetectionService) -> None:
        service.add_and_check(ContentEvent(PHRASE * 4))
        assert service.get_loop_recovery_prompts() == [
            *BASE_RECOVERY_PROMPTS,
            *CONTENT_RECOVERY_PROMPTS,
        ]

    def test_two_recovery_attempts_per_prompt(self, service: LoopDetectionService) -> None:
        assert service.should_attempt_auto_recovery() is True
        service.record_recovery_attempt()
        assert service.should_attempt_auto_recovery() is True
        service.record_recovery_attempt()
        assert service.should_attempt_auto_recovery() is False

        service.reset("next")
        assert service.should_attempt_auto_recovery() is True


class TestLlmCheck:
    """Tests for turn_started and the LLM-based check."""

    @staticmethod
    def _config(**overrides: Any) -> LoopDetectionConfiguration:
        values: dict[str, Any] = {"llm_check_after_turns": 1, "default_llm_check_interval": 1}
        values.update(overrides)
        return LoopDetectionConfiguration(**values)

    @pytest.mark.asyncio
    async def test_no_check_before_thirty_turns(self, telemetry: RecordingTelemetrySink) -> None:
        client = FakeLoopCheckClient(confidence=1.0)
        service = LoopDetectionService(
            LoopDetectionConfiguration(), telemetry=telemetry, loop_check_client=client
        )
        service.reset("p")

        for _ in range(29):
            assert await service.turn_started() is False
        assert client.calls == 0
        assert await service.turn_started() is True
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_high_confidence_confirms_loop(
        self, telemetry: RecordingTelemetrySink
    ) -> None:
        client = FakeLoopCheckClient(confidence=0.95)
        service = LoopDetectionService(
            self._config(), telemetry=telemetry, loop_check_client=client
        )
        service.reset("p")

        assert await service.turn_started() is True
        assert service.loop_type is LoopType.LLM_DETECTED_LOOP
        assert telemetry.events[0].confidence == 0.95
        assert telemetry.events[0].reasoning == "stuck on the same file"
        assert service.add_and_check(ContentEvent("anything")) is True

    @pytest.mark.asyncio
    async def test_low_confidence_backs_off(self, telemetry: RecordingTelemetrySink) -> None:
        client = FakeLoopCheckClient(confidence=0.5)
        service = LoopDetectionService(
            self._config(), telemetry=telemetry, loop_check_client=client
        )
        service.reset("p")

        assert await service.turn_started() is False
        assert service.get_stats()["llm_check_interval"] == 10
        for _ in range(9):
            await service.turn_started()
        assert client.calls == 1
        await service.turn_started()
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_reset_clears_all_session_state_at_once(
        self, telemetry: RecordingTelemetrySink
    ) -> None:
        client = FakeLoopCheckClient(confidence=0.5)
        service = LoopDetectionService(
            LoopDetectionConfiguration(), telemetry=telemetry, loop_check_client=client
        )
        service.reset("first")

        for _ in range(3):
            service.add_and_check(_tool_call())
        service.add_and_check(ContentEvent(PHRASE * 2))
        for _ in range(31):
            await service.turn_started()
        service.record_recovery_attempt()

        before = service.get_stats()
        assert before["tool_call_repetition_count"] == 3
        assert before["stream_content_history_length"] == len(PHRASE) * 2
        assert before["content_stats_size"] > 0
        assert before["turns_in_current_prompt"] == 31
        assert before["last_check_turn"] == 30
        assert before["llm_check_interval"] == 10
        assert before["loop_recovery_attempts"] == 1

        service.reset("second")

        after = service.get_stats()
        assert after["prompt_id"] == "second"
        assert after["state"] == DetectorState.IDLE.value
        assert after["loop_detected"] is False
        assert after["loop_type"] is None
        assert after["last_tool_call_key"] is None
        assert after["tool_call_repetition_count"] == 0
        assert after["stream_content_history_length"] == 0
        assert after["content_stats_size"] == 0
        assert after["last_content_index"] == 0
        assert after["in_code_block"] is False
        assert after["turns_in_current_prompt"] == 0
        assert after["last_check_turn"] == 0
        assert after["llm_check_interval"] == 3
        assert after["loop_recovery_attempts"] == 0

    @pytest.mark.asyncio
    async def test_skipped_for_openai_compatible_backends(
        self, telemetry: RecordingTelemetrySink
    ) -> None:
        client = FakeLoopCheckClient(confidence=1.0)
        service = LoopDetectionService(
            self._config(backend_type=BackendType.OPENAI_COMPATIBLE),
            telemetry=telemetry,
            loop_check_client=client,
        )
        service.reset("p")

        for _ in range(5):
            assert await service.turn_started() is False
        assert client.calls == 0

    @pytest.mark.asyncio
    async def test_skipped_without_client(self, telemetry: RecordingTelemetrySink) -> None:
        service = LoopDetectionService(self._config(), telemetry=telemetry)
        service.reset("p")
        assert await service.turn_started() is False

    @pytest.mark.asyncio
    async def test_abort_returns_false_and_keeps_state(
        self, telemetry: RecordingTelemetrySink
    ) -> None:
        client = FakeLoopCheckClient(confidence=1.0)
        client.gate = asyncio.Event()
        service = LoopDetectionService(
            self._config(), telemetry=telemetry, loop_check_client=client
        )
        service.reset("p")
        abort = asyncio.Event()

        task = asyncio.create_task(service.turn_started(abort))
        await asyncio.sleep(0)
        abort.set()

        assert await task is False
        assert service.loop_detected is False
        assert telemetry.events == []

    @pytest.mark.asyncio
    async def test_result_after_reset_is_discarded(
        self, telemetry: RecordingTelemetrySink
    ) -> None:
        client = FakeLoopCheckClient(confidence=1.0)
        client.gate = asyncio.Event()
        service = LoopDetectionService(
            self._config(), telemetry=telemetry, loop_check_client=client
        )
        service.reset("old")

        task = asyncio.create_task(service.turn_started())
        for _ in range(3):
            await asyncio.sleep(0)
        service.reset("new")
        client.gate.set()

        assert await task is False
        assert service.loop_detected is False
        assert service.prompt_id == "new"
        assert telemetry.events == []

    @pytest.mark.asyncio
    async def test_disabled_llm_check(self, telemetry: RecordingTelemetrySink) -> None:
        client = FakeLoopCheckClient(confidence=1.0)
        service = LoopDetectionService(
            self._config(llm_check_enabled=False),
            telemetry=telemetry,
            loop_check_client=client,
        )
        service.reset("p")
        assert await service.turn_started() is False
        assert client.calls == 0


class TestStats:
    def test_stats_snapshot(
        self, offline_config: LoopDetectionConfiguration, telemetry: RecordingTelemetrySink
    ) -> None:
        service = LoopDetectionService(offline_config, telemetry=telemetry)
        service.reset("p")
        service.add_and_check(_tool_call())
        stats = service.get_stats()
        assert stats["prompt_id"] == "p"
        assert stats["state"] == "tracking"
        assert stats["tool_call_repetition_count"] == 1
        assert stats["loop_type"] is None
        assert stats["turns_in_current_prompt"] == 0
