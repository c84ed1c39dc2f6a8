"""
Retry handling for event_consumer.

Provides the backoff and attempt-ceiling policy applied to handler
outcomes and broker reconnects.
"""

from event_consumer.retry.policy import RetryPolicy, RetryState

__all__ = [
    "RetryPolicy",
    "RetryState",
]
