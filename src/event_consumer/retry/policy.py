"""
Retry policy for message redelivery.

Pure decisions only: whether a failed attempt earns another delivery,
and how long the broker should wait before redelivering. The broker
owns redelivery itself; nothing here is persisted.

Backoff:
    delay = base * 2^min(attempt, cap_exponent), then shifted by a random
    jitter of up to delay/4 in either direction.

Poison-message containment:
    Once the delivery attempt reaches max_attempts, any failure is
    classified fatal regardless of its error category.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from event_consumer.broker.base import Message
from event_consumer.common.exceptions import ErrorCategory
from event_consumer.config import ConsumerConfig
from event_consumer.schemas.results import ProcessingOutcome


@dataclass(frozen=True)
class RetryState:
    """Retry bookkeeping derived from a message's delivery metadata."""

    attempt: int
    max_attempts: int
    next_eligible_at: Optional[datetime]

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter and an attempt ceiling.

    Attributes:
        max_attempts: Deliveries allowed before failures become fatal
        base_delay_seconds: Backoff base
        cap_exponent: Largest exponent applied to the base
        jitter: Shift each delay by up to a quarter in either direction
    """

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    cap_exponent: int = 6
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.cap_exponent < 0:
            raise ValueError("cap_exponent must be >= 0")

    @classmethod
    def from_config(cls, config: ConsumerConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_backoff_seconds,
            cap_exponent=config.max_backoff_exponent,
        )

    def should_retry(self, attempt: int, category: ErrorCategory) -> bool:
        """
        Whether a failure on this 1-based attempt earns another delivery.

        Permanent errors never retry; transient and unknown errors retry
        until the attempt ceiling.
        """
        if attempt >= self.max_attempts:
            return False
        return category is not ErrorCategory.PERMANENT

    def is_exhausted(self, attempt: int) -> bool:
        """Whether a delivery is already past the attempt ceiling."""
        return attempt > self.max_attempts

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before the next delivery after `attempt`."""
        exponent = min(max(attempt, 0), self.cap_exponent)
        delay = self.base_delay_seconds * (2 ** exponent)
        if self.jitter and delay > 0:
            delay += self.rng.uniform(-delay / 4, delay / 4)
        return max(0.0, delay)

    def classify(self, attempt: int, outcome: ProcessingOutcome) -> ProcessingOutcome:
        """
        Apply the attempt ceiling to a handler outcome.

        A retryable failure at or past max_attempts becomes fatal.
        Success and fatal outcomes pass through unchanged.
        """
        if not outcome.should_redeliver:
            return outcome
        if self.should_retry(attempt, ErrorCategory.TRANSIENT):
            return outcome
        return ProcessingOutcome.fatal(
            f"max attempts exceeded ({attempt}/{self.max_attempts}): {outcome.reason}"
        )

    def retry_state(self, message: Message) -> RetryState:
        """Derive retry bookkeeping for a message's current delivery."""
        attempt = message.delivery_attempt
        if attempt >= self.max_attempts:
            next_eligible_at = None
        else:
            next_eligible_at = message.received_at + timedelta(
                seconds=self.backoff_delay(attempt)
            )
        return RetryState(
            attempt=attempt,
            max_attempts=self.max_attempts,
            next_eligible_at=next_eligible_at,
        )
