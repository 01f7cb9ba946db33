"""Shared enums for modulith."""

from enum import Enum


class Environment(Enum):
    """Runtime environment types."""

    DEVELOPMENT = "dev"
    TESTING = "test"
    STAGING = "staging"
    PRODUCTION = "prod"

    @property
    def is_production(self) -> bool:
        return self == Environment.PRODUCTION


class LogLevel(Enum):
    """Logging levels with priority mapping."""

    DEBUG = ("DEBUG", 10)
    INFO = ("INFO", 20)
    WARNING = ("WARNING", 30)
    ERROR = ("ERROR", 40)
    CRITICAL = ("CRITICAL", 50)

    def __init__(self, level_name: str, priority: int):
        self.level_name = level_name
        self.priority = priority

    def to_logging_level(self) -> int:
        """Convert to standard logging module level."""
        return self.priority


class LogFormat(Enum):
    """Log renderers."""

    JSON = "json"
    CONSOLE = "console"
    PLAIN = "plain"


class ReportFormat(Enum):
    """Output formats of the boundary analysis report."""

    JSON = "json"
    TEXT = "text"


class Lifecycle(Enum):
    """Instance lifecycle of a contract binding."""

    SINGLETON = "singleton"  # One lazily built instance for the registry lifetime
    TRANSIENT = "transient"  # New instance on every resolution
