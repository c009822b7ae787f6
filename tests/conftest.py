import asyncio
import inspect
import warnings
from pathlib import Path
from typing import Any

import pytest
from loopguard.core.domain.configuration.loop_detection_config import (
    LoopDetectionConfiguration,
)
from loopguard.core.services.telemetry import RecordingTelemetrySink

# Keys read by the loaders and helpers under test; cleared so a developer's
# shell cannot change results.
_ISOLATED_ENV_VARS = (
    "OPENAI_BASE_URL",
    "LOCAL_MODEL_TOKEN_LIMIT",
    "LOCAL_MODEL_MAX_TOKENS",
    "LOOP_DETECTION_ENABLED",
    "LOOP_TOOL_CALL_THRESHOLD",
    "LOCAL_MODEL_MAX_CONCURRENT_REQUESTS",
    "LOCAL_MODEL_QUEUE_TIMEOUT_MS",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ISOLATED_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def telemetry() -> RecordingTelemetrySink:
    return RecordingTelemetrySink()


@pytest.fixture
def offline_config() -> LoopDetectionConfiguration:
    """Detector configuration with the LLM-based check switched off."""
    return LoopDetectionConfiguration(llm_check_enabled=False)


@pytest.fixture
def temp_config_path(tmp_path: Path) -> Path:
    """Create a minimal YAML config file and return its path."""
    import yaml

    cfg = {
        "loop_detection": {"tool_call_loop_threshold": 3, "content_chunk_size": 30},
        "concurrency": {"max_concurrent_requests": 3},
    }
    p = tmp_path / "loopguard.yaml"
    with p.open("w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)
    return p


def pytest_sessionstart(session) -> None:  # type: ignore[no-untyped-def]
    """Session start hook: install warning filters."""
    _install_global_warning_filters()


def pytest_configure(config) -> None:  # type: ignore[no-untyped-def]
    """Install warning filters in each worker process (xdist)."""
    _install_global_warning_filters()


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async tests using a lightweight event loop runner."""

    test_function = pyfuncitem.obj

    if not inspect.iscoroutinefunction(test_function):
        return None

    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)

        signature = inspect.signature(test_function)
        call_args: dict[str, Any] = {}
        for name in signature.parameters:
            if name in pyfuncitem.funcargs:
                call_args[name] = pyfuncitem.funcargs[name]

        loop.run_until_complete(test_function(**call_args))
    finally:
        asyncio.set_event_loop(None)
        loop.close()

    return True


def _install_global_warning_filters() -> None:
    warnings.filterwarnings("ignore", category=PendingDeprecationWarning)
    warnings.filterwarnings("ignore", category=DeprecationWarning)
    warnings.filterwarnings("ignore", category=ResourceWarning)
