import pytest
from loopguard.local_models.detection import (
    DEFAULT_LOCAL_PATTERNS,
    LocalPatternSet,
    classify_backend,
    is_local_model,
)


class TestClassifyBackend:
    def test_local_url_and_model(self) -> None:
        result = classify_backend("http://127.0.0.1:11434", "llama3.2:8b")
        assert result.is_local is True
        assert result.matched_url_pattern == "127.0.0.1"
        assert result.matched_model_pattern == "llama"
        assert result.patterns_version == DEFAULT_LOCAL_PATTERNS.version

    def test_cloud_url_and_model(self) -> None:
        result = classify_backend("https://api.openai.com/v1", "gpt-4")
        assert result.is_local is False
        assert result.matched_url_pattern is None
        assert result.matched_model_pattern is None

    def test_model_name_alone_is_enough(self) -> None:
        result = classify_backend("https://api.openai.com/v1", "llama-7b")
        assert result.is_local is True
        assert result.matched_url_pattern is None

    @pytest.mark.parametrize(
        "url",
        [
            "http://LOCALHOST:1234/v1",
            "http://0.0.0.0:9000",
            "http://192.168.1.20/v1",
            "http://10.0.0.5",
            "http://172.16.4.4",
            "http://gpu-box.local",
            "http://inference:8080",
            "http://inference:8000/v1",
        ],
    )
    def test_local_urls(self, url: str) -> None:
        assert classify_backend(url, None).is_local is True

    @pytest.mark.parametrize(
        "model", ["Mistral-7B-Instruct", "qwen2.5-coder", "CodeLlama-13b", "vicuna", "alpaca-lora"]
    )
    def test_local_model_names(self, model: str) -> None:
        assert classify_backend(None, model).is_local is True

    def test_empty_inputs(self) -> None:
        assert classify_backend().is_local is False
        assert classify_backend("", "").is_local is False

    def test_custom_pattern_set(self) -> None:
        patterns = DEFAULT_LOCAL_PATTERNS.extended("1-lab", url_patterns=["lab.internal"])
        assert classify_backend("https://lab.internal/v1", "gpt-4", patterns).is_local
        assert classify_backend("https://lab.internal/v1", "gpt-4").is_local is False

    def test_replacement_pattern_set(self) -> None:
        patterns = LocalPatternSet(version="strict", url_patterns=("localhost",), model_patterns=())
        assert classify_backend("http://10.0.0.1", "llama", patterns).is_local is False


class TestIsLocalModel:
    def test_falls_back_to_openai_base_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:1234/v1")
        assert is_local_model(None, "gpt-4") is True

    def test_explicit_url_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:1234/v1")
        assert is_local_model("https://api.openai.com/v1", "gpt-4") is False

    def test_no_url_anywhere(self) -> None:
        assert is_local_model(None, "gpt-4") is False
