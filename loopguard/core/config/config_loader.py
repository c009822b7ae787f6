import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from loopguard.core.common.exceptions import ConfigurationError
from loopguard.core.domain.configuration.concurrency_config import (
    ConcurrencyConfiguration,
)
from loopguard.core.domain.configuration.loop_detection_config import (
    LoopDetectionConfiguration,
)

logger = logging.getLogger(__name__)

# Environment variable -> (section, field, parser name)
_ENV_FIELDS: dict[str, tuple[str, str, str]] = {
    "LOOP_DETECTION_ENABLED": ("loop_detection", "enabled", "bool"),
    "LOOP_TOOL_CALL_THRESHOLD": ("loop_detection", "tool_call_loop_threshold", "int"),
    "LOOP_CONTENT_THRESHOLD": ("loop_detection", "content_loop_threshold", "int"),
    "LOOP_CONTENT_CHUNK_SIZE": ("loop_detection", "content_chunk_size", "int"),
    "LOOP_MAX_HISTORY_LENGTH": ("loop_detection", "max_history_length", "int"),
    "LOOP_LLM_CHECK_ENABLED": ("loop_detection", "llm_check_enabled", "bool"),
    "LOOP_LLM_CHECK_AFTER_TURNS": ("loop_detection", "llm_check_after_turns", "int"),
    "LOOP_MAX_RECOVERY_ATTEMPTS": ("loop_detection", "max_recovery_attempts", "int"),
    "LOCAL_MODEL_MAX_CONCURRENT_REQUESTS": (
        "concurrency",
        "max_concurrent_requests",
        "int",
    ),
    "LOCAL_MODEL_QUEUE_TIMEOUT_MS": ("concurrency", "queue_timeout", "float"),
    "LOCAL_MODEL_ADAPTIVE_THROTTLING": ("concurrency", "adaptive_throttling", "bool"),
}

_SECTIONS = ("loop_detection", "concurrency")


def _str_to_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    val = val.strip().lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off", "none"):
        return False
    return default


def _parse_env_value(name: str, raw: str, kind: str) -> Any:
    if kind == "bool":
        return _str_to_bool(raw, True)
    try:
        return int(raw.strip()) if kind == "int" else float(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r}",
            details={"variable": name, "value": raw},
        ) from exc


class ConfigLoader:
    """Builds loop detection and concurrency configuration.

    Values are layered: model defaults, then environment variables (after
    loading ``.env``), then an optional YAML/JSON file with
    ``loop_detection:`` and ``concurrency:`` sections.
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        dotenv_path: str | None = None,
    ) -> None:
        """Initialize the configuration loader.

        Args:
            env: Explicit environment mapping; ``os.environ`` (with ``.env``
                loaded) when omitted
            dotenv_path: Alternative ``.env`` location
        """
        self._env = env
        self._dotenv_path = dotenv_path
        self._config_cache: dict[str, dict[str, Any]] | None = None

    def load_config(self, config_file: str | None = None) -> dict[str, dict[str, Any]]:
        """Load raw configuration sections from the environment and a file.

        Raises:
            ConfigurationError: A value cannot be parsed or the file is invalid
        """
        if self._config_cache is None:
            self._config_cache = self._load_base_config()

        config = {section: dict(values) for section, values in self._config_cache.items()}

        if config_file:
            file_config = self._load_config_file(config_file)
            for section in _SECTIONS:
                values = file_config.get(section)
                if values is None:
                    continue
                if not isinstance(values, dict):
                    raise ConfigurationError(
                        f"Section '{section}' in {config_file} must be a mapping"
                    )
                config[section].update(values)

        return config

    def load_loop_detection_config(
        self, config_file: str | None = None
    ) -> LoopDetectionConfiguration:
        values = self.load_config(config_file)["loop_detection"]
        return self._build(LoopDetectionConfiguration, values, "loop_detection")

    def load_concurrency_config(
        self, config_file: str | None = None
    ) -> ConcurrencyConfiguration:
        values = self.load_config(config_file)["concurrency"]
        return self._build(ConcurrencyConfiguration, values, "concurrency")

    @staticmethod
    def _build(model: Any, values: dict[str, Any], section: str) -> Any:
        try:
            return model.model_validate(values)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid {section} configuration: {exc}",
                details={"section": section, "errors": exc.errors()},
            ) from exc

    def _environment(self) -> Mapping[str, str]:
        if self._env is not None:
            return self._env
        load_dotenv(self._dotenv_path)
        return os.environ

    def _load_base_config(self) -> dict[str, dict[str, Any]]:
        env = self._environment()
        config: dict[str, dict[str, Any]] = {section: {} for section in _SECTIONS}

        for name, (section, field_name, kind) in _ENV_FIELDS.items():
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                continue
            config[section][field_name] = _parse_env_value(name, raw, kind)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Configuration from environment: %s", config)
        return config

    def _load_config_file(self, config_file: str) -> dict[str, Any]:
        path = Path(config_file)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_file}")

        content = path.read_text(encoding="utf-8")
        try:
            result: Any = yaml.safe_load(content)
        except yaml.YAMLError:
            try:
                result = json.loads(content)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(
                    f"Invalid configuration file format: {exc}"
                ) from exc

        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ConfigurationError(
                f"Configuration file {config_file} must contain a mapping"
            )
        return result

    def reload_config(self) -> None:
        """Clear the config cache to force reload on next access."""
        self._config_cache = None
