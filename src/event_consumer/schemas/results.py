"""
Processing outcome schema.

A handler returns one ProcessingOutcome per event; the consumer loop
turns it into an ack, a nack or a dead-letter.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OutcomeStatus(Enum):
    """Terminal status of one processing attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProcessingOutcome:
    """Result of handling one event.

    Attributes:
        status: Success, retryable failure or fatal failure
        reason: Why the attempt failed (None on success)

    Example:
        >>> ProcessingOutcome.retryable("upstream timeout").should_redeliver
        True
    """

    status: OutcomeStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "ProcessingOutcome":
        return cls(OutcomeStatus.SUCCESS)

    @classmethod
    def retryable(cls, reason: str) -> "ProcessingOutcome":
        return cls(OutcomeStatus.RETRYABLE, reason)

    @classmethod
    def fatal(cls, reason: str) -> "ProcessingOutcome":
        return cls(OutcomeStatus.FATAL, reason)

    @property
    def is_success(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def should_redeliver(self) -> bool:
        """Whether the message should go back to the broker for another attempt."""
        return self.status is OutcomeStatus.RETRYABLE

    @property
    def is_fatal(self) -> bool:
        return self.status is OutcomeStatus.FATAL
