from types import SimpleNamespace

import pytest
from loopguard.local_models import capabilities
from loopguard.local_models.capabilities import (
    detect_local_model_capabilities,
    get_compression_threshold,
    get_local_model_sampling_params,
    get_local_model_token_limit,
)


@pytest.fixture
def total_memory(monkeypatch: pytest.MonkeyPatch):  # type: ignore[no-untyped-def]
    def set_total(total: float) -> None:
        monkeypatch.setattr(
            capabilities.psutil, "virtual_memory", lambda: SimpleNamespace(total=total)
        )

    return set_total


class TestTokenLimit:
    def test_default(self) -> None:
        assert get_local_model_token_limit("qwen2.5-7b", env={}) == 80_000

    def test_override(self) -> None:
        assert get_local_model_token_limit("x", env={"LOCAL_MODEL_TOKEN_LIMIT": "32000"}) == 32_000

    @pytest.mark.parametrize("value", ["-5", "0", "lots", ""])
    def test_invalid_override_ignored(self, value: str) -> None:
        assert get_local_model_token_limit("x", env={"LOCAL_MODEL_TOKEN_LIMIT": value}) == 80_000


class TestCapabilities:
    @pytest.mark.parametrize(("total", "expected"), [(16e9, 4), (6e9, 2), (3e9, 1)])
    def test_memory_tiers(self, total_memory, total: float, expected: int) -> None:  # type: ignore[no-untyped-def]
        total_memory(total)
        caps = detect_local_model_capabilities(env={}, argv=[])
        assert caps.max_concurrent_requests == expected
        assert caps.max_context_size == 80_000
        assert caps.aggressive_compression is True
        assert caps.adaptive_timeout is True
        assert caps.use_gpu is False
        assert caps.batch_size is None

    @pytest.mark.parametrize(
        ("env", "argv"),
        [
            ({"CUDA_VISIBLE_DEVICES": "0"}, []),
            ({"CUDA_DEVICE_ORDER": "PCI_BUS_ID"}, []),
            ({}, ["agent", "--gpu"]),
        ],
    )
    def test_gpu_hints(self, total_memory, env: dict, argv: list) -> None:  # type: ignore[no-untyped-def]
        total_memory(8e9)
        caps = detect_local_model_capabilities(env=env, argv=argv)
        assert caps.use_gpu is True
        assert caps.batch_size == 8


class TestCompressionThreshold:
    def test_cloud(self) -> None:
        assert get_compression_threshold(False) == 0.9

    @pytest.mark.parametrize(("rss", "expected"), [(3e9, 0.3), (1.5e9, 0.5), (2e8, 0.6)])
    def test_local_by_memory(
        self, monkeypatch: pytest.MonkeyPatch, rss: float, expected: float
    ) -> None:
        monkeypatch.setattr(capabilities, "_process_memory_bytes", lambda: rss)
        assert get_compression_threshold(True) == expected


class TestSamplingParams:
    def test_defaults(self) -> None:
        assert get_local_model_sampling_params(env={}) == {
            "temperature": 0.3,
            "top_p": 0.9,
            "top_k": 40,
            "repetition_penalty": 1.1,
            "max_tokens": 1024,
        }

    @pytest.mark.parametrize(
        ("value", "expected"), [("512", 512), ("4096", 2048), ("plenty", 1024)]
    )
    def test_max_tokens_env(self, value: str, expected: int) -> None:
        params = get_local_model_sampling_params(env={"LOCAL_MODEL_MAX_TOKENS": value})
        assert params["max_tokens"] == expected
