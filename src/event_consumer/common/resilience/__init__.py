"""
Resilience primitives for event_consumer.

Provides:
    - TokenBucketRateLimiter: shared async throughput limiter
"""

from event_consumer.common.resilience.rate_limiter import TokenBucketRateLimiter

__all__ = [
    "TokenBucketRateLimiter",
]
