"""Resource-aware defaults for local model deployments."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import psutil

from loopguard.core.interfaces.model_bases import InternalDTO

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_TOKEN_LIMIT = 80_000
DEFAULT_LOCAL_MAX_TOKENS = 1024
LOCAL_MAX_TOKENS_CAP = 2048

CLOUD_COMPRESSION_THRESHOLD = 0.9


@dataclass(frozen=True)
class LocalModelCapabilities(InternalDTO):
    """Suggested limits for the host the local model runs on."""

    max_concurrent_requests: int = 2
    adaptive_timeout: bool = True
    max_context_size: int = DEFAULT_LOCAL_TOKEN_LIMIT
    aggressive_compression: bool = True
    use_gpu: bool = False
    batch_size: int | None = None


def _positive_int(value: str | None) -> int | None:
    if not value:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def get_local_model_token_limit(
    model: str | None = None, env: Mapping[str, str] | None = None
) -> int:
    """Context token limit for a local model.

    ``LOCAL_MODEL_TOKEN_LIMIT`` overrides the default when it holds a
    positive integer. Every model family currently shares the same limit.
    """
    environ = os.environ if env is None else env
    override = _positive_int(environ.get("LOCAL_MODEL_TOKEN_LIMIT"))
    if override is not None:
        return override
    return DEFAULT_LOCAL_TOKEN_LIMIT


def _concurrency_for_memory(total_memory: float) -> int:
    if total_memory > 8e9:
        return 4
    if total_memory > 4e9:
        return 2
    return 1


def has_gpu_hint(
    env: Mapping[str, str] | None = None, argv: Sequence[str] | None = None
) -> bool:
    environ = os.environ if env is None else env
    arguments = sys.argv if argv is None else argv
    return (
        "CUDA_VISIBLE_DEVICES" in environ
        or "CUDA_DEVICE_ORDER" in environ
        or any("--gpu" in arg for arg in arguments)
    )


def detect_local_model_capabilities(
    env: Mapping[str, str] | None = None,
    argv: Sequence[str] | None = None,
) -> LocalModelCapabilities:
    """Derive local model limits from system memory and GPU hints."""
    total_memory = psutil.virtual_memory().total
    use_gpu = has_gpu_hint(env, argv)

    capabilities = LocalModelCapabilities(
        max_concurrent_requests=_concurrency_for_memory(total_memory),
        adaptive_timeout=True,
        max_context_size=DEFAULT_LOCAL_TOKEN_LIMIT,
        aggressive_compression=True,
        use_gpu=use_gpu,
        batch_size=8 if use_gpu else None,
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Detected local model capabilities: %s", capabilities)
    return capabilities


def _process_memory_bytes() -> int:
    return psutil.Process().memory_info().rss


def get_compression_threshold(is_local: bool) -> float:
    """Fraction of the context window at which history should be compressed.

    Cloud models compress late; local models compress earlier, and more
    aggressively as this process's resident memory grows.
    """
    if not is_local:
        return CLOUD_COMPRESSION_THRESHOLD

    used = _process_memory_bytes()
    if used > 2e9:
        return 0.3
    if used > 1e9:
        return 0.5
    return 0.6


def get_local_model_sampling_params(
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Sampling defaults that keep local models consistent and less repetitive."""
    environ = os.environ if env is None else env
    max_tokens = DEFAULT_LOCAL_MAX_TOKENS
    raw = environ.get("LOCAL_MODEL_MAX_TOKENS")
    if raw:
        try:
            max_tokens = int(raw.strip())
        except ValueError:
            logger.warning("Ignoring invalid LOCAL_MODEL_MAX_TOKENS=%r", raw)
    return {
        "temperature": 0.3,
        "top_p": 0.9,
        "top_k": 40,
        "repetition_penalty": 1.1,
        "max_tokens": min(max_tokens, LOCAL_MAX_TOKENS_CAP),
    }
