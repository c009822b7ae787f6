"""Configuration for tool call loop detection.

This module provides configuration structures and validation for tracking
consecutive identical tool calls.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any

TOOL_CALL_LOOP_THRESHOLD = 5


@dataclass
class ToolCallLoopConfig:
    """Configuration for tool call loop detection."""

    # Whether tool call loop detection is enabled
    enabled: bool = True

    # Number of consecutive identical tool calls that counts as a loop
    max_repeats: int = TOOL_CALL_LOOP_THRESHOLD

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.max_repeats < 2:
            errors.append("max_repeats must be at least 2")

        return errors

    @classmethod
    def from_env_vars(cls, env_vars: dict[str, str]) -> ToolCallLoopConfig:
        """Create a configuration from environment variables.

        Args:
            env_vars: Dictionary of environment variables

        Returns:
            A ToolCallLoopConfig instance
        """
        config = cls()

        if "TOOL_LOOP_DETECTION_ENABLED" in env_vars:
            value = env_vars["TOOL_LOOP_DETECTION_ENABLED"].lower()
            config.enabled = value in ("true", "1", "yes")

        if "TOOL_LOOP_MAX_REPEATS" in env_vars:
            with contextlib.suppress(ValueError):
                config.max_repeats = int(env_vars["TOOL_LOOP_MAX_REPEATS"])

        return config

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> ToolCallLoopConfig:
        """Create a configuration from a dictionary.

        Args:
            config_dict: Dictionary with configuration values

        Returns:
            A ToolCallLoopConfig instance
        """
        config = cls()

        if "enabled" in config_dict:
            config.enabled = bool(config_dict["enabled"])

        if "max_repeats" in config_dict:
            with contextlib.suppress(ValueError, TypeError):
                config.max_repeats = int(config_dict["max_repeats"])

        return config

    def to_dict(self) -> dict[str, bool | int]:
        """Convert configuration to a dictionary."""
        return {
            "enabled": self.enabled,
            "max_repeats": self.max_repeats,
        }
