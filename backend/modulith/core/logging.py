# ruff: noqa: A005
"""Structured logging.

structlog on top of the standard library logging module. Records are
rendered to stderr so machine-readable output of the analysis command on
stdout stays clean.

Importing modulith never configures logging. The analysis command and the
bootstrap call configure_logging(); a library user who does neither gets a
structlog-only setup on the first emitted record, with no handler installed
and no settings read, so the host's logging stays in charge.

Architecture:
- LogConfig: level, format and environment defaults
- mask_sensitive_fields / truncate_long_values: structlog processors
- StructuredLogger: keyword-argument logger used throughout modulith
- configure_logging: explicit process-wide setup
- get_logger: cached loggers, no side effects
"""

import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Any

import structlog
from structlog.contextvars import merge_contextvars

from modulith.core.enums import Environment, LogFormat, LogLevel
from modulith.core.errors import ConfigurationError

SENSITIVE_FIELD = re.compile(
    r"password|token|secret|credential|authorization|api.?key", re.IGNORECASE
)
# Claim tokens identify a lease, not a caller; they stay readable
UNMASKED_FIELDS = frozenset({"claim_token"})
MASK = "***[MASKED]"


@dataclass
class LogConfig:
    """
    Logging configuration.

    Usage Example:
        configure_logging(LogConfig(level=LogLevel.DEBUG, format=LogFormat.JSON))
    """

    level: LogLevel = field(default=LogLevel.INFO)
    format: LogFormat | None = None
    environment: Environment = field(default=Environment.DEVELOPMENT)

    enable_timestamps: bool = True
    enable_caller_info: bool = False
    mask_sensitive_data: bool = True
    max_value_length: int = 4000

    def __post_init__(self):
        if self.max_value_length < 200:
            raise ConfigurationError(
                "Maximum logged value length must be at least 200 characters",
                config_key="max_value_length",
            )
        if self.format is None:
            self.format = self._default_format()

    def _default_format(self) -> LogFormat:
        if self.environment == Environment.PRODUCTION:
            return LogFormat.JSON
        if self.environment == Environment.TESTING:
            return LogFormat.PLAIN
        return LogFormat.CONSOLE


# =====================================================================================
# PROCESSORS
# =====================================================================================


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: MASK if _is_sensitive(k) else _mask(v) for k, v in value.items()
        }
    return value


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and key not in UNMASKED_FIELDS and bool(
        SENSITIVE_FIELD.search(key)
    )


def mask_sensitive_fields(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask values of credential-like keys, recursing into nested dicts."""
    return {
        key: MASK if _is_sensitive(key) else _mask(value)
        for key, value in event_dict.items()
    }


def truncate_long_values(max_length: int):
    """Processor cutting long string values such as listener error texts."""
    suffix = "... [TRUNCATED]"

    def processor(_logger: Any, _method: str, event_dict: dict) -> dict:
        for key, value in event_dict.items():
            if isinstance(value, str) and len(value) > max_length:
                event_dict[key] = value[: max_length - len(suffix)] + suffix
        return event_dict

    return processor


# =====================================================================================
# LOGGER
# =====================================================================================


class StructuredLogger:
    """
    Logger taking the message positionally and structured fields as keywords.

        logger.info("Event published", event_type=..., queued_count=2)
    """

    def __init__(self, name: str):
        self.name = name

    def _emit(self, method: str, message: str, kwargs: dict[str, Any]) -> None:
        _ensure_configured()
        getattr(structlog.get_logger(self.name), method)(message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit("debug", message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("info", message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("warning", message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("error", message, kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self._emit("critical", message, kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at error level with the active exception's traceback."""
        kwargs["exc_info"] = True
        self._emit("error", message, kwargs)


# =====================================================================================
# GLOBAL CONFIGURATION AND FACTORY
# =====================================================================================


_config: LogConfig | None = None
_loggers: dict[str, StructuredLogger] = {}


def _renderer(fmt: LogFormat) -> Any:
    if fmt == LogFormat.JSON:
        return structlog.processors.JSONRenderer()
    if fmt == LogFormat.CONSOLE:
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.KeyValueRenderer(key_order=["event", "level", "logger"])


def configure_logging(config: LogConfig | None = None, *, install_handler: bool = True) -> None:
    """
    Configure structlog and the stdlib root handler.

    Args:
        config: Logging configuration (built from settings if not provided)
        install_handler: Also add a stderr root handler and set modulith log levels
    """
    global _config  # noqa: PLW0603 - process-wide logging setup

    if config is None:
        from modulith.core.config import get_settings

        settings = get_settings()
        config = LogConfig(level=settings.log_level, environment=settings.environment)

    processors: list[Any] = [
        merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]
    if config.enable_timestamps:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if config.enable_caller_info:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.LINENO,
                ]
            )
        )
    if config.mask_sensitive_data:
        processors.append(mask_sensitive_fields)
    processors.extend(
        [
            truncate_long_values(config.max_value_length),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _renderer(config.format),
        ]
    )

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if install_handler:
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stderr,
            level=config.level.to_logging_level(),
        )
        logging.getLogger("modulith").setLevel(config.level.to_logging_level())
        if config.environment.is_production:
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _config = config


def _ensure_configured() -> None:
    """Install the processor chain on first emission if nothing configured structlog."""
    if _config is None and not structlog.is_configured():
        configure_logging(LogConfig(), install_handler=False)


def get_logger(name: str) -> StructuredLogger:
    """
    Get structured logger instance.

    Args:
        name: Logger name (usually __name__)
    """
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def log_context(**kwargs: Any) -> None:
    """Add context variables to all subsequent logs in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all context variables."""
    structlog.contextvars.clear_contextvars()


__all__ = [
    "LogConfig",
    "StructuredLogger",
    "clear_context",
    "configure_logging",
    "get_logger",
    "log_context",
    "mask_sensitive_fields",
    "truncate_long_values",
]
