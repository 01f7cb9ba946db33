"""Base error classes and error handling helpers.

Every modulith error carries a stable code, a severity, structured details
and a correlation id, and writes one structured log record when it is
created. The severity decides the log level.
"""

import logging
import re
import time
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Any

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY = re.compile(r"password|secret|credential|authorization|api.?key|auth_token")


class ErrorSeverity(Enum):
    """Error severity, mapped to the log level of the error record."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def log_level(self) -> int:
        return _SEVERITY_LOG_LEVELS[self]


_SEVERITY_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def redact(details: dict[str, Any]) -> dict[str, Any]:
    """Copy of details with credential-like keys redacted, recursively."""
    redacted: dict[str, Any] = {}
    for key, value in details.items():
        if _SENSITIVE_KEY.search(str(key).lower()):
            redacted[key] = _REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact(value)
        else:
            redacted[key] = value
    return redacted


class ModulithError(Exception):
    """
    Base exception for all modulith errors.

    Keyword arguments:
        code: Overrides the class default_code
        details: Structured, JSON-compatible facts about the failure
        correlation_id: Id tying the error to a request, publish or run
        context: Ambient context added by error_context()
        recovery_hint: Operator-facing hint included in reports
        cause: Underlying exception
    """

    default_code: str = "ERROR"
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retryable: bool = False

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = kwargs.get("code") or self.default_code
        self.details: dict[str, Any] = dict(kwargs.get("details") or {})
        self.correlation_id = kwargs.get("correlation_id") or str(uuid.uuid4())
        self.context: dict[str, Any] = dict(kwargs.get("context") or {})
        self.recovery_hint = kwargs.get("recovery_hint")
        self.error_id = str(uuid.uuid4())
        self.timestamp = time.time()
        if kwargs.get("cause") is not None:
            self.__cause__ = kwargs["cause"]

        logging.getLogger(f"modulith.errors.{type(self).__name__}").log(
            self.severity.log_level,
            "%s: %s",
            self.code,
            message,
            extra={
                "error_id": self.error_id,
                "correlation_id": self.correlation_id,
                "severity": self.severity.value,
                "retryable": self.retryable,
                "details": redact(self.details),
            },
        )

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        """
        Serialize for reports.

        Args:
            include_internal: Also include error id, correlation id, severity and context
        """
        data: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.details:
            data["details"] = redact(self.details)
        if self.recovery_hint:
            data["recovery_hint"] = self.recovery_hint
        if include_internal:
            data["error_id"] = self.error_id
            data["correlation_id"] = self.correlation_id
            data["severity"] = self.severity.value
            data["context"] = self.context
        return data

    def __str__(self) -> str:
        return f"[{self.error_id}] {self.code}: {self.message}"


class ApplicationError(ModulithError):
    """Base class for errors raised by modulith operations."""

    default_code = "APPLICATION_ERROR"


class InfrastructureError(ModulithError):
    """Base class for storage and runtime infrastructure errors."""

    default_code = "INFRASTRUCTURE_ERROR"
    severity = ErrorSeverity.HIGH
    retryable = True


class ValidationError(ApplicationError):
    """Invalid input handed to a modulith API."""

    default_code = "VALIDATION_ERROR"
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, field: str | None = None, **kwargs: Any) -> None:
        if field:
            kwargs["details"] = {**(kwargs.get("details") or {}), "field": field}
        super().__init__(message, **kwargs)


class ConflictError(ApplicationError):
    """Operation conflicts with existing state, such as a second subscription."""

    default_code = "CONFLICT"

    def __init__(self, message: str, resource: str | None = None, **kwargs: Any) -> None:
        if resource:
            kwargs["details"] = {**(kwargs.get("details") or {}), "resource": resource}
        super().__init__(message, **kwargs)


class ConfigurationError(InfrastructureError):
    """Invalid settings or module descriptors."""

    default_code = "CONFIGURATION_ERROR"
    severity = ErrorSeverity.CRITICAL
    retryable = False

    def __init__(self, message: str, config_key: str | None = None, **kwargs: Any) -> None:
        if config_key:
            kwargs["details"] = {**(kwargs.get("details") or {}), "config_key": config_key}
        super().__init__(message, **kwargs)


# Error handling utilities


class ErrorContext:
    """Correlation id and context shared by the errors of one operation."""

    def __init__(self, correlation_id: str | None = None, **context: Any) -> None:
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = context

    def create_error(
        self, error_class: type[ModulithError], *args: Any, **kwargs: Any
    ) -> ModulithError:
        kwargs.setdefault("correlation_id", self.correlation_id)
        kwargs["context"] = {**self.context, **(kwargs.get("context") or {})}
        return error_class(*args, **kwargs)


@contextmanager
def error_context(correlation_id: str | None = None, **context: Any) -> Any:
    """Attach context to any modulith error raised inside the block."""
    ctx = ErrorContext(correlation_id, **context)
    try:
        yield ctx
    except ModulithError as e:
        e.context.update(ctx.context)
        raise


__all__ = [
    "ApplicationError",
    "ConfigurationError",
    "ConflictError",
    "ErrorContext",
    "ErrorSeverity",
    "InfrastructureError",
    "ModulithError",
    "ValidationError",
    "error_context",
    "redact",
]
