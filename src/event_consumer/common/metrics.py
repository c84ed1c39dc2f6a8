"""
Prometheus metrics for event consumer monitoring.

Provides instrumentation for:
- Terminal message outcomes (success, retry, fatal)
- Decode and broker error tracking
- Processing time histograms
- Rate limiter wait time
- Active worker count
"""

from prometheus_client import Counter, Gauge, Histogram

messages_processed_total = Counter(
    "event_consumer_messages_processed_total",
    "Total number of messages finalized by outcome",
    ["event_type", "outcome"],  # outcome: success, retryable, fatal
)

messages_dead_lettered_total = Counter(
    "event_consumer_messages_dead_lettered_total",
    "Total number of messages routed to the dead-letter destination",
    ["reason_kind"],  # reason_kind: decode, fatal
)

decode_errors_total = Counter(
    "event_consumer_decode_errors_total",
    "Total number of payloads that failed to decode",
)

broker_errors_total = Counter(
    "event_consumer_broker_errors_total",
    "Total number of broker transport errors",
    ["operation", "error_category"],  # operation: pull, ack, nack, release, dead_letter
)

message_processing_duration_seconds = Histogram(
    "event_consumer_message_processing_duration_seconds",
    "Time spent processing individual messages",
    ["event_type"],
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
        60.0,
    ),  # From 5ms to 60s
)

rate_limiter_wait_seconds = Histogram(
    "event_consumer_rate_limiter_wait_seconds",
    "Time workers spent waiting for a rate limiter token",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

active_workers = Gauge(
    "event_consumer_active_workers",
    "Number of consumer loops currently running",
)


def record_outcome(event_type: str, outcome: str, duration: float) -> None:
    """
    Record a terminal message outcome.

    Args:
        event_type: Event kind the message decoded to ("unknown" if not decoded)
        outcome: Outcome status value (success, retryable, fatal)
        duration: Processing duration in seconds
    """
    messages_processed_total.labels(event_type=event_type, outcome=outcome).inc()
    message_processing_duration_seconds.labels(event_type=event_type).observe(
        duration
    )


def record_dead_letter(reason_kind: str) -> None:
    """
    Record a message routed to the dead-letter destination.

    Args:
        reason_kind: Why it was dead-lettered (decode, fatal)
    """
    messages_dead_lettered_total.labels(reason_kind=reason_kind).inc()


def record_decode_error() -> None:
    """Record a payload decode failure."""
    decode_errors_total.inc()


def record_broker_error(operation: str, error_category: str) -> None:
    """
    Record a broker transport error.

    Args:
        operation: Broker operation that failed
        error_category: Error category (transient, permanent, unknown)
    """
    broker_errors_total.labels(
        operation=operation, error_category=error_category
    ).inc()


def record_rate_limiter_wait(seconds: float) -> None:
    """Record time spent waiting for a rate limiter token."""
    rate_limiter_wait_seconds.observe(seconds)
