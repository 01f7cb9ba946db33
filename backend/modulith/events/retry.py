"""Retry policy for queued deliveries."""

import random
from dataclasses import dataclass

from modulith.core.config import EventBusConfig
from modulith.core.errors import ConfigurationError


@dataclass
class RetryPolicy:
    """
    Exponential backoff with a cap and optional jitter.

    The n-th retry (0-based) waits base_delay * backoff_multiplier ** n
    seconds, capped at max_delay. Jitter scales the delay into [50%, 100%].
    """

    base_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.base_delay < 0:
            raise ConfigurationError("base_delay cannot be negative")
        if self.max_delay < self.base_delay:
            raise ConfigurationError("max_delay must be at least base_delay")
        if self.backoff_multiplier < 1:
            raise ConfigurationError("backoff_multiplier must be at least 1")

    @classmethod
    def from_config(cls, config: EventBusConfig) -> "RetryPolicy":
        return cls(
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            backoff_multiplier=config.retry_backoff_multiplier,
            jitter=config.retry_jitter,
        )

    def calculate_delay(self, retry_count: int) -> float:
        """
        Calculate delay for retry attempt.

        Args:
            retry_count: Number of retries already scheduled (0 for the first)

        Returns:
            Delay in seconds
        """
        exponent = min(max(retry_count, 0), 64)
        delay = min(self.base_delay * (self.backoff_multiplier**exponent), self.max_delay)

        # Spread retries to avoid thundering herd
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)

        return delay
