"""
Shared fixtures for event_consumer unit tests.

Provides fixtures for:
- Consumer configuration without rate limiting
- Deterministic retry policy (no jitter, tiny base delay)
- In-memory broker
- Handler registry isolation and log context cleanup
"""

import json
import random

import pytest

from event_consumer.broker.memory import InMemoryBroker
from event_consumer.common.logging import clear_log_context
from event_consumer.config import ConsumerConfig
from event_consumer.handlers.registry import HandlerRegistry, reset_registry
from event_consumer.retry.policy import RetryPolicy


@pytest.fixture(autouse=True)
def isolate_global_state():
    """Reset the global handler registry and log context around each test."""
    reset_registry()
    clear_log_context()
    yield
    reset_registry()
    clear_log_context()


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    """Consumer configuration tuned for fast tests."""
    return ConsumerConfig(
        worker_count=2,
        max_attempts=5,
        base_backoff_seconds=0.001,
        max_backoff_exponent=6,
        rate_limit_per_second=None,
        pull_timeout_seconds=0.01,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Retry policy without jitter so delays are exact."""
    return RetryPolicy(
        max_attempts=5,
        base_delay_seconds=0.001,
        cap_exponent=6,
        jitter=False,
        rng=random.Random(0),
    )


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def dlq_broker() -> InMemoryBroker:
    return InMemoryBroker(dead_letter_enabled=True)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def event_payload() -> bytes:
    """Well-formed storage event payload."""
    return json.dumps({"bucket": "b1", "name": "clip.mp4", "size": "120"}).encode()
