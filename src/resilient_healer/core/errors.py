"""
Centralized error handling module for resilient_healer.

This module defines a hierarchy of exceptions for the healing engine. Contract
violations (caller bugs) are separated from I/O failures so that callers can
decide which errors are worth catching. Every error carries an error code,
a context dictionary and the original exception that was wrapped, if any.
"""

from typing import Any, Dict, Optional


class BaseError(Exception):
    """Base class for all custom exceptions in the application."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        """
        Initialize the BaseError.

        Args:
            message: The primary error message.
            error_code: A unique code for this error type (e.g., 'CONFIG_001').
            context: A dictionary of contextual information related to the error.
            original_exception: The original exception that was caught and wrapped.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        self.original_exception = original_exception

    def __str__(self) -> str:
        """Create a string representation of the error."""
        parts = []
        if self.error_code:
            parts.append(f"[{self.error_code}]")
        parts.append(self.message)

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"Context: ({context_str})")

        if self.original_exception:
            parts.append(
                f"--> Caused by: {type(self.original_exception).__name__}: {self.original_exception}"
            )

        return " ".join(parts)


class HealerError(BaseError):
    """Base exception class for all resilient_healer errors."""

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(
            message or "An error occurred in the healing engine",
            error_code=error_code,
            context=context,
            original_exception=original_exception,
        )


class ConfigurationError(HealerError):
    """Error related to invalid configuration values."""

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(
            message or "Invalid configuration specified",
            error_code="CONFIG_001",
            context=context,
            original_exception=original_exception,
        )


class ContractViolationError(HealerError):
    """
    A caller broke the API contract.

    These are programming errors and are never retried.
    """

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(
            message or "API contract violated",
            error_code=error_code or "CONTRACT_001",
            context=context,
            original_exception=original_exception,
        )


class AttemptNotFoundError(ContractViolationError):
    """A healing attempt id was sealed that was never recorded."""

    def __init__(self, attempt_id: str):
        super().__init__(
            f"Attempt not found: {attempt_id}",
            error_code="ATTEMPT_404",
            context={"attempt_id": attempt_id},
        )
        self.attempt_id = attempt_id


class AttemptAlreadySealedError(ContractViolationError):
    """A healing attempt was sealed a second time."""

    def __init__(self, attempt_id: str):
        super().__init__(
            f"Attempt already sealed: {attempt_id}",
            error_code="ATTEMPT_409",
            context={"attempt_id": attempt_id},
        )
        self.attempt_id = attempt_id


class ConcurrentTaskError(ContractViolationError):
    """The same task id was retried concurrently."""

    def __init__(self, task_id: str):
        super().__init__(
            f"Task is already being retried: {task_id}",
            error_code="TASK_409",
            context={"task_id": task_id},
        )
        self.task_id = task_id


class CacheError(HealerError):
    """Error reading or writing the cache export file."""

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(
            message or "Cache operation failed",
            error_code="CACHE_001",
            context=context,
            original_exception=original_exception,
        )


class HistoryError(HealerError):
    """Error reading or writing the healing history file."""

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(
            message or "History operation failed",
            error_code="HISTORY_001",
            context=context,
            original_exception=original_exception,
        )


class LLMServiceError(HealerError):
    """Error in LLM service communication."""

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(
            message or "Error communicating with language model service",
            error_code="LLM_001",
            context=context,
            original_exception=original_exception,
        )
