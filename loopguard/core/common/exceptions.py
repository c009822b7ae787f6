"""
Common exception classes for llm-loop-guard.

Queue-management errors are terminal for the one request they belong to and
never affect sibling requests. Loop detection itself never raises; these
types only surface through awaited gate calls, configuration loading and
inference clients.
"""

from __future__ import annotations

from typing import Any


class LoopGuardError(Exception):
    """Base exception class for all llm-loop-guard errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        for key, value in kwargs.items():
            setattr(self, key, value)

    def to_dict(self) -> dict[str, Any]:
        error_dict: dict[str, Any] = {
            "message": self.message,
            "type": self.__class__.__name__,
            "details": self.details,
        }

        for attr_name, value in vars(self).items():
            if attr_name.startswith("_") or attr_name in ("message", "details"):
                continue
            if callable(value):
                continue
            error_dict[attr_name] = value

        return {"error": error_dict}


class ConfigurationError(LoopGuardError):
    """Raised when there's a configuration issue."""

    def __init__(
        self,
        message: str = "Configuration error",
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, details, **kwargs)


class ConcurrencyError(LoopGuardError):
    """Raised when the local-model concurrency gate rejects a request."""

    def __init__(
        self,
        message: str = "Request rejected by concurrency manager",
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, details, **kwargs)
        self.request_id = request_id


class QueueTimeoutError(ConcurrencyError):
    """Raised when a request waits in the queue longer than the queue timeout."""

    def __init__(
        self,
        request_id: str,
        timeout_ms: float,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"Request {request_id} timed out in queue after {timeout_ms:g}ms",
            request_id=request_id,
            details=details,
        )
        self.timeout_ms = timeout_ms


class RequestAbortedError(ConcurrencyError):
    """Raised when a queued request's abort event fires before admission."""

    def __init__(
        self,
        request_id: str | None = None,
        message: str = "Request was aborted",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id, details=details)


class QueueClearedError(ConcurrencyError):
    """Raised for every queued request when the queue is cleared on shutdown."""

    def __init__(
        self,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            "Request queue cleared", request_id=request_id, details=details
        )


class RequestExecutionError(ConcurrencyError):
    """Wraps a non-``Exception`` failure raised by a request function."""

    def __init__(
        self,
        original: BaseException,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            str(original) or type(original).__name__,
            request_id=request_id,
            details={"original_type": type(original).__name__},
        )
        self.original = original


class BackendError(LoopGuardError):
    """Raised when an inference backend operation fails."""

    def __init__(
        self,
        message: str = "Backend operation failed",
        backend_name: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, details, **kwargs)
        self.backend_name = backend_name


class JsonGenerationError(BackendError):
    """Raised when a structured JSON generation call fails or returns garbage."""

    def __init__(
        self,
        message: str = "JSON generation failed",
        backend_name: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, backend_name, details, **kwargs)


class ServiceUnavailableError(BackendError):
    """Raised when an inference backend cannot be reached."""

    def __init__(
        self,
        message: str = "Service unavailable",
        backend_name: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, backend_name, details, **kwargs)
