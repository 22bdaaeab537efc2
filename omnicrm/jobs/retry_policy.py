"""Exponential backoff policy shared by every runner."""

from dataclasses import dataclass

from omnicrm.config import settings


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    max_attempts failures send a job to `error`; before that each failure
    re-queues it after base_delay_seconds * multiplier ** (attempts - 1),
    capped at max_delay_seconds when set.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float | None = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.multiplier < 1:
            raise ValueError("base_delay_seconds must be >= 0 and multiplier >= 1")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(**settings.retry_policy_config())

    def should_retry(self, attempts: int) -> bool:
        """attempts is the count after the failure being handled."""
        return attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        delay = self.base_delay_seconds * self.multiplier ** max(attempts - 1, 0)
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay
