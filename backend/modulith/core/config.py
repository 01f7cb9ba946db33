"""Configuration management.

Loads modulith settings from `MODULITH_*` environment variables (optionally
seeded from a `.env` file), converts and validates them, and exposes them as
plain dataclasses.

Architecture:
- EnvironmentLoader: Environment variable loading with type conversion
- AnalysisConfig: Offline boundary analysis settings
- EventBusConfig: Delivery queue, retry and worker settings
- Settings: Main configuration object
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any

from modulith.core.enums import Environment, LogLevel
from modulith.core.errors import ConfigurationError

ENV_PREFIX = "MODULITH_"

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


# =====================================================================================
# ENVIRONMENT LOADER
# =====================================================================================


class EnvironmentLoader:
    """
    Environment variable loader with type conversion and validation.

    Keys are looked up with the `MODULITH_` prefix; values from the env file
    never override variables already present in the environment.
    """

    def __init__(self, env_file: str = ".env", prefix: str = ENV_PREFIX):
        self.env_file = env_file
        self.prefix = prefix
        self._load_env_file()

    def _load_env_file(self) -> None:
        """Load environment variables from file if it exists."""
        if not self.env_file or not os.path.exists(self.env_file):
            return

        try:
            with open(self.env_file, encoding="utf-8") as f:
                for raw_line in f:
                    line = raw_line.strip()

                    if not line or line.startswith("#") or "=" not in line:
                        continue

                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()

                    if (value.startswith('"') and value.endswith('"')) or (
                        value.startswith("'") and value.endswith("'")
                    ):
                        value = value[1:-1]

                    if key not in os.environ:
                        os.environ[key] = value

        except OSError as e:
            raise ConfigurationError(
                f"Failed to load environment file {self.env_file}: {e}"
            ) from e

    def _raw(self, key: str) -> str | None:
        return os.environ.get(f"{self.prefix}{key}")

    def get_string(self, key: str, default: str | None = None) -> str | None:
        """Get string value from environment."""
        value = self._raw(key)
        return default if value is None or value == "" else value

    def get_integer(
        self,
        key: str,
        default: int,
        min_value: int | None = None,
        max_value: int | None = None,
    ) -> int:
        """Get integer value from environment."""
        raw = self._raw(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"{self.prefix}{key} must be an integer, got {raw!r}", config_key=key
            ) from e
        self._check_range(key, value, min_value, max_value)
        return value

    def get_float(
        self,
        key: str,
        default: float,
        min_value: float | None = None,
        max_value: float | None = None,
    ) -> float:
        """Get float value from environment."""
        raw = self._raw(key)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"{self.prefix}{key} must be a number, got {raw!r}", config_key=key
            ) from e
        self._check_range(key, value, min_value, max_value)
        return value

    def get_boolean(self, key: str, default: bool) -> bool:
        """Get boolean value from environment."""
        raw = self._raw(key)
        if raw is None:
            return default
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigurationError(
            f"{self.prefix}{key} must be a boolean, got {raw!r}", config_key=key
        )

    def get_enum(self, key: str, enum_class: type[Enum], default: Enum) -> Any:
        """Get enum value from environment, matching by value or name."""
        raw = self._raw(key)
        if raw is None:
            return default
        for member in enum_class:
            if raw.lower() in (str(member.name).lower(), str(member.value).lower()):
                return member
        raise ConfigurationError(
            f"{self.prefix}{key} has invalid value {raw!r}", config_key=key
        )

    def _check_range(
        self, key: str, value: float, min_value: float | None, max_value: float | None
    ) -> None:
        if min_value is not None and value < min_value:
            raise ConfigurationError(
                f"{self.prefix}{key} must be >= {min_value}", config_key=key
            )
        if max_value is not None and value > max_value:
            raise ConfigurationError(
                f"{self.prefix}{key} must be <= {max_value}", config_key=key
            )


# =====================================================================================
# CONFIGURATION SECTIONS
# =====================================================================================


@dataclass
class AnalysisConfig:
    """Settings of the offline boundary analysis pass."""

    descriptors_path: str | None = None
    max_workers: int = 8
    exclude_patterns: list[str] = field(
        default_factory=lambda: ["*/tests/*", "*/migrations/*"]
    )

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate analysis settings."""
        if self.max_workers < 1:
            raise ConfigurationError(
                "Analysis worker count must be at least 1", config_key="max_workers"
            )


@dataclass
class EventBusConfig:
    """
    Settings of the event bus delivery queue and worker.

    max_attempts counts every delivery attempt, so a delivery failing
    max_attempts times is dead-lettered.
    """

    max_attempts: int = 5
    lease_seconds: float = 30.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 300.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter: bool = True
    worker_batch_size: int = 100
    worker_poll_interval: float = 1.0
    worker_concurrency: int = 10
    database_url: str | None = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate delivery settings."""
        if self.max_attempts < 1:
            raise ConfigurationError(
                "Max delivery attempts must be at least 1", config_key="max_attempts"
            )
        if self.lease_seconds <= 0:
            raise ConfigurationError(
                "Lease duration must be positive", config_key="lease_seconds"
            )
        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            raise ConfigurationError(
                "Retry delays must satisfy 0 <= base_delay <= max_delay",
                config_key="retry_base_delay",
            )
        if self.retry_backoff_multiplier < 1:
            raise ConfigurationError(
                "Backoff multiplier must be at least 1",
                config_key="retry_backoff_multiplier",
            )
        if self.worker_batch_size < 1 or self.worker_concurrency < 1:
            raise ConfigurationError(
                "Worker batch size and concurrency must be at least 1",
                config_key="worker_batch_size",
            )
        if self.worker_poll_interval <= 0:
            raise ConfigurationError(
                "Worker poll interval must be positive",
                config_key="worker_poll_interval",
            )


# =====================================================================================
# SETTINGS
# =====================================================================================


class Settings:
    """
    Main modulith settings.

    Usage Example:
        settings = get_settings()
        settings.event_bus.max_attempts
        settings.analysis.max_workers
    """

    def __init__(self, env_file: str = ".env"):
        self.env_loader = EnvironmentLoader(env_file)

        self._load_application_config()
        self._load_analysis_config()
        self._load_event_bus_config()

    def _load_application_config(self) -> None:
        """Load environment and logging configuration."""
        self.environment = self.env_loader.get_enum(
            "ENVIRONMENT", Environment, Environment.DEVELOPMENT
        )
        self.log_level = self.env_loader.get_enum("LOG_LEVEL", LogLevel, LogLevel.INFO)

    def _load_analysis_config(self) -> None:
        """Load analysis configuration."""
        self.analysis = AnalysisConfig(
            descriptors_path=self.env_loader.get_string("DESCRIPTORS"),
            max_workers=self.env_loader.get_integer(
                "ANALYSIS_WORKERS", min(32, (os.cpu_count() or 1) + 4), min_value=1
            ),
        )

    def _load_event_bus_config(self) -> None:
        """Load event bus configuration."""
        self.event_bus = EventBusConfig(
            max_attempts=self.env_loader.get_integer(
                "MAX_DELIVERY_ATTEMPTS", 5, min_value=1
            ),
            lease_seconds=self.env_loader.get_float("LEASE_SECONDS", 30.0),
            retry_base_delay=self.env_loader.get_float("RETRY_BASE_DELAY", 1.0),
            retry_max_delay=self.env_loader.get_float("RETRY_MAX_DELAY", 300.0),
            retry_backoff_multiplier=self.env_loader.get_float("RETRY_BACKOFF", 2.0),
            retry_jitter=self.env_loader.get_boolean("RETRY_JITTER", True),
            worker_batch_size=self.env_loader.get_integer("WORKER_BATCH_SIZE", 100),
            worker_poll_interval=self.env_loader.get_float(
                "WORKER_POLL_INTERVAL", 1.0
            ),
            worker_concurrency=self.env_loader.get_integer("WORKER_CONCURRENCY", 10),
            database_url=self.env_loader.get_string("DATABASE_URL"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Non-secret view of the settings."""
        return {
            "environment": self.environment.value,
            "log_level": self.log_level.level_name,
            "analysis": {
                "descriptors_path": self.analysis.descriptors_path,
                "max_workers": self.analysis.max_workers,
            },
            "event_bus": {
                "max_attempts": self.event_bus.max_attempts,
                "lease_seconds": self.event_bus.lease_seconds,
                "worker_concurrency": self.event_bus.worker_concurrency,
            },
        }


@lru_cache
def get_settings(env_file: str = ".env") -> Settings:
    """
    Get cached settings instance.

    Args:
        env_file: Environment file to load
    """
    return Settings(env_file)


__all__ = [
    "AnalysisConfig",
    "EnvironmentLoader",
    "EventBusConfig",
    "Settings",
    "get_settings",
]
