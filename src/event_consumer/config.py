"""Event consumer configuration from environment variables."""

import math
import os
from dataclasses import dataclass, field
from typing import Optional

from event_consumer.common.exceptions import ConfigurationError


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer, got '{raw}'", cause=e
        ) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got '{raw}'", cause=e
        ) from e


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka connection and behavior configuration.

    Load from environment using KafkaConfig.from_env().
    All timing values in milliseconds unless otherwise noted.
    """

    # Connection
    bootstrap_servers: str
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"

    # SASL_PLAIN credentials
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""

    # Subscription
    topic: str = "storage.events"
    group_id: str = "event-consumer"
    dlq_topic: str = ""

    # Consumer defaults
    auto_offset_reset: str = "earliest"
    max_poll_records: int = 100
    max_poll_interval_ms: int = 300000  # 5 minutes
    session_timeout_ms: int = 30000
    request_timeout_ms: int = 40000

    @classmethod
    def from_env(cls) -> "KafkaConfig":
        """Load configuration from environment variables.

        Required environment variables:
            KAFKA_BOOTSTRAP_SERVERS: Kafka broker addresses

        Optional environment variables (with defaults):
            KAFKA_SECURITY_PROTOCOL: PLAINTEXT (default)
            KAFKA_SASL_MECHANISM: PLAIN (default)
            KAFKA_SASL_PLAIN_USERNAME / KAFKA_SASL_PLAIN_PASSWORD: empty
            KAFKA_TOPIC: storage.events (default)
            KAFKA_CONSUMER_GROUP: event-consumer (default)
            KAFKA_DLQ_TOPIC: empty, dead-lettering disabled (default)
            KAFKA_MAX_POLL_RECORDS: 100 (default)
            KAFKA_SESSION_TIMEOUT_MS: 30000 (default)

        Raises:
            ConfigurationError: If required environment variables are missing
        """
        bootstrap_servers = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
        if not bootstrap_servers:
            raise ConfigurationError(
                "KAFKA_BOOTSTRAP_SERVERS environment variable is required"
            )

        return cls(
            bootstrap_servers=bootstrap_servers,
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM", "PLAIN"),
            sasl_plain_username=os.getenv("KAFKA_SASL_PLAIN_USERNAME", ""),
            sasl_plain_password=os.getenv("KAFKA_SASL_PLAIN_PASSWORD", ""),
            topic=os.getenv("KAFKA_TOPIC", "storage.events"),
            group_id=os.getenv("KAFKA_CONSUMER_GROUP", "event-consumer"),
            dlq_topic=os.getenv("KAFKA_DLQ_TOPIC", ""),
            max_poll_records=_env_int("KAFKA_MAX_POLL_RECORDS", 100),
            session_timeout_ms=_env_int("KAFKA_SESSION_TIMEOUT_MS", 30000),
        )


@dataclass(frozen=True)
class PubSubConfig:
    """Google Cloud Pub/Sub subscription configuration.

    Load from environment using PubSubConfig.from_env().
    """

    project_id: str
    subscription_id: str
    credentials_file: str
    dlq_topic_id: str = ""

    @classmethod
    def from_env(cls) -> "PubSubConfig":
        """Load configuration from environment variables.

        Required environment variables:
            GCP_PROJECT_ID: Project owning the subscription
            PUBSUB_SUBSCRIPTION_ID: Subscription to pull from
            GOOGLE_APPLICATION_CREDENTIALS: Service account key file

        Optional environment variables:
            PUBSUB_DLQ_TOPIC_ID: empty, dead-lettering disabled (default)

        Raises:
            ConfigurationError: Naming every required variable that is missing
        """
        required = {
            name: os.getenv(name, "").strip()
            for name in (
                "GCP_PROJECT_ID",
                "PUBSUB_SUBSCRIPTION_ID",
                "GOOGLE_APPLICATION_CREDENTIALS",
            )
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                context={"missing": missing},
            )

        return cls(
            project_id=required["GCP_PROJECT_ID"],
            subscription_id=required["PUBSUB_SUBSCRIPTION_ID"],
            credentials_file=required["GOOGLE_APPLICATION_CREDENTIALS"],
            dlq_topic_id=os.getenv("PUBSUB_DLQ_TOPIC_ID", ""),
        )


@dataclass(frozen=True)
class ConsumerConfig:
    """Consumer pool behavior, read once at startup and never reloaded.

    rate_limit_per_second of None disables throttling. rate_limit_burst
    defaults to the rate rounded up.
    """

    worker_count: int = 4
    max_attempts: int = 5
    base_backoff_seconds: float = 1.0
    max_backoff_exponent: int = 6
    rate_limit_per_second: Optional[float] = 10.0
    rate_limit_burst: Optional[int] = None
    pull_timeout_seconds: float = 1.0
    kafka: Optional[KafkaConfig] = field(default=None, compare=False)
    pubsub: Optional[PubSubConfig] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            raise ConfigurationError("worker_count must be >= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if self.base_backoff_seconds < 0:
            raise ConfigurationError("base_backoff_seconds must be >= 0")
        if self.max_backoff_exponent < 0:
            raise ConfigurationError("max_backoff_exponent must be >= 0")
        if self.rate_limit_per_second is not None and self.rate_limit_per_second <= 0:
            raise ConfigurationError(
                "rate_limit_per_second must be > 0 (use None to disable)"
            )
        if self.rate_limit_burst is not None and self.rate_limit_burst < 1:
            raise ConfigurationError("rate_limit_burst must be >= 1")
        if self.pull_timeout_seconds <= 0:
            raise ConfigurationError("pull_timeout_seconds must be > 0")

    @property
    def effective_burst(self) -> Optional[int]:
        """Bucket capacity used for the rate limiter, or None when unlimited."""
        if self.rate_limit_per_second is None:
            return None
        if self.rate_limit_burst is not None:
            return self.rate_limit_burst
        return max(1, math.ceil(self.rate_limit_per_second))

    @classmethod
    def from_env(
        cls,
        kafka: Optional[KafkaConfig] = None,
        pubsub: Optional[PubSubConfig] = None,
    ) -> "ConsumerConfig":
        """Load configuration from environment variables.

        Optional environment variables (with defaults):
            CONSUMER_WORKER_COUNT: 4
            CONSUMER_MAX_ATTEMPTS: 5
            CONSUMER_BASE_BACKOFF_SECONDS: 1.0
            CONSUMER_MAX_BACKOFF_EXPONENT: 6
            CONSUMER_RATE_LIMIT_PER_SECOND: 10 (0 disables throttling)
            CONSUMER_RATE_LIMIT_BURST: rate rounded up
            CONSUMER_PULL_TIMEOUT_SECONDS: 1.0

        Raises:
            ConfigurationError: If a value is malformed or out of range
        """
        rate = _env_float("CONSUMER_RATE_LIMIT_PER_SECOND", 10.0)
        burst_raw = os.getenv("CONSUMER_RATE_LIMIT_BURST")

        return cls(
            worker_count=_env_int("CONSUMER_WORKER_COUNT", 4),
            max_attempts=_env_int("CONSUMER_MAX_ATTEMPTS", 5),
            base_backoff_seconds=_env_float("CONSUMER_BASE_BACKOFF_SECONDS", 1.0),
            max_backoff_exponent=_env_int("CONSUMER_MAX_BACKOFF_EXPONENT", 6),
            rate_limit_per_second=rate if rate > 0 else None,
            rate_limit_burst=(
                _env_int("CONSUMER_RATE_LIMIT_BURST", 1) if burst_raw else None
            ),
            pull_timeout_seconds=_env_float("CONSUMER_PULL_TIMEOUT_SECONDS", 1.0),
            kafka=kafka,
            pubsub=pubsub,
        )
