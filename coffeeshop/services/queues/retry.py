"""
Queue Retry Policies

Decides whether a failed task gets another attempt and how long it waits.
Implements exponential backoff with jitter, capped at a maximum delay.
"""

import random
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from coffeeshop.core.config import settings
from coffeeshop.core.errors import FatalTaskError

from .tasks import TaskData


class RetryPolicy(BaseModel):
    """Backoff configuration."""

    base_delay_seconds: float = Field(
        default=5.0, ge=0.1, le=600.0, description="Base delay in seconds"
    )
    max_delay_seconds: float = Field(
        default=600.0, ge=1.0, le=86400.0, description="Maximum delay in seconds"
    )
    multiplier: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Delay multiplier"
    )
    jitter: bool = Field(default=True, description="Add jitter to delays")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        )


class RetryStrategy(ABC):
    """Abstract base class for retry strategies."""

    @abstractmethod
    def should_retry(self, task_data: TaskData, error: Exception) -> bool:
        """
        Determine if task should be retried.

        Called after ``task_data.retried`` has been incremented for the
        failed attempt.
        """

    @abstractmethod
    def calculate_delay(self, retried: int) -> float:
        """Calculate the delay in seconds before retry number ``retried``."""


class ExponentialBackoffRetry(RetryStrategy):
    """
    Exponential backoff retry strategy with jitter.

    A task is retried while ``retried < max_retry``; fatal errors are never
    retried.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()

    def should_retry(self, task_data: TaskData, error: Exception) -> bool:
        if isinstance(error, FatalTaskError):
            return False
        return task_data.retried < task_data.max_retry

    def calculate_delay(self, retried: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = self.policy.base_delay_seconds * (
            self.policy.multiplier ** max(retried - 1, 0)
        )

        # Apply maximum delay limit
        delay = min(delay, self.policy.max_delay_seconds)

        if self.policy.jitter:
            # ±25% jitter
            jitter_amount = delay * 0.25
            delay += self._rng.uniform(-jitter_amount, jitter_amount)

        return max(delay, 0.1)
