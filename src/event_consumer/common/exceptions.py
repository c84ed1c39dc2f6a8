"""
Exception types and error classification for event_consumer.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for consumer errors
- Error classification utilities
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., network timeouts, broker unavailable)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., malformed payloads, missing handlers, bad config)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ConsumerError(Exception):
    """
    Base exception for all consumer errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should trigger a retry."""
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class DecodeError(ConsumerError):
    """Message payload is malformed and cannot become an event."""

    category = ErrorCategory.PERMANENT


class HandlerError(ConsumerError):
    """
    Domain failure raised by an event handler.

    The handler decides whether the failure is worth another delivery.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.category = (
            ErrorCategory.TRANSIENT if retryable else ErrorCategory.PERMANENT
        )


class NoHandlerError(ConsumerError):
    """No handler is registered for an event kind."""

    category = ErrorCategory.PERMANENT

    def __init__(self, event_type: str):
        super().__init__(
            f"no handler registered for event type '{event_type}'",
            context={"event_type": event_type},
        )
        self.event_type = event_type


class BrokerError(ConsumerError):
    """Transport-level failure talking to the message broker."""

    category = ErrorCategory.TRANSIENT


class ConfigurationError(ConsumerError):
    """Invalid configuration."""

    category = ErrorCategory.PERMANENT


def classify_exception(exc: Exception) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, ConsumerError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "no route to host",
        "network unreachable",
        "name resolution",
        "dns",
        "socket",
        "broken pipe",
        "nodenotready",
        "leadernotavailable",
        "notleaderforpartition",
        "requesttimedout",
        "serviceunavailable",
        "deadlineexceeded",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    if "rebalance" in exc_type or "rebalance" in exc_str:
        return ErrorCategory.TRANSIENT

    permanent_markers = (
        "authentication",
        "authorization",
        "unauthorized",
        "topicauthorizationfailed",
        "unsupportedsaslmechanism",
        "invalid configuration",
        "permissiondenied",
        "unauthenticated",
        "notfound",
    )
    if any(m in exc_type or m in exc_str for m in permanent_markers):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_broker_exception(
    exc: Exception,
    message: str,
    context: Optional[dict] = None,
) -> BrokerError:
    """
    Wrap a transport exception in BrokerError, keeping its classification.

    Args:
        exc: Exception raised by the broker library
        message: Context message describing the failed operation
        context: Additional context to include

    Returns:
        BrokerError carrying the original exception as cause
    """
    if isinstance(exc, BrokerError):
        if context:
            exc.context.update(context)
        return exc

    error = BrokerError(message, cause=exc, context=context)
    category = classify_exception(exc)
    if category == ErrorCategory.PERMANENT:
        error.category = category
    return error
