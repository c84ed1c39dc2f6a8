"""
Google Cloud Pub/Sub broker client.

Adapts a Pub/Sub pull subscription to the lease-based BrokerClient
boundary:
- Synchronous SubscriberClient calls run in a worker thread
  (asyncio.to_thread) so the event loop is never blocked
- A pulled message is leased until its ack deadline; ack acknowledges it
- nack sets the ack deadline to the redelivery delay, so Pub/Sub
  redelivers once the delay has passed
- delivery_attempt comes from Pub/Sub when the subscription has a
  dead-letter policy, otherwise it is counted in process
- Optional dead-letter topic served by a PublisherClient
"""

import asyncio
import logging
import math
from concurrent import futures
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from google.api_core import exceptions as gcp_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import pubsub_v1

from event_consumer.broker.base import BrokerClient, Message
from event_consumer.common.exceptions import (
    BrokerError,
    ConfigurationError,
    wrap_broker_exception,
)
from event_consumer.common.logging import get_logger, log_exception, log_with_context
from event_consumer.config import PubSubConfig

logger = get_logger(__name__)

# Pub/Sub rejects ack deadlines above 10 minutes
MAX_ACK_DEADLINE_SECONDS = 600

DLQ_PUBLISH_TIMEOUT_SECONDS = 30.0


class PubSubBrokerClient(BrokerClient):
    """
    Lease-based broker client on top of a Pub/Sub pull subscription.

    Usage:
        >>> config = PubSubConfig.from_env()
        >>> broker = PubSubBrokerClient(config)
        >>> await broker.start()
        >>> message = await broker.pull(timeout=1.0)
        >>> await broker.ack(message)
        >>> await broker.stop()
    """

    def __init__(
        self,
        config: PubSubConfig,
        subscriber_factory: Optional[Callable[[], Any]] = None,
        publisher_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        Initialize Pub/Sub broker client.

        Args:
            config: Pub/Sub configuration
            subscriber_factory: Builds the subscriber (default: SubscriberClient
                from the configured service account file)
            publisher_factory: Builds the dead-letter publisher (default:
                PublisherClient from the same service account file)
        """
        self.config = config
        self._subscriber_factory = subscriber_factory or (
            lambda: pubsub_v1.SubscriberClient.from_service_account_file(
                config.credentials_file
            )
        )
        self._publisher_factory = publisher_factory or (
            lambda: pubsub_v1.PublisherClient.from_service_account_file(
                config.credentials_file
            )
        )
        self._subscriber = None
        self._publisher = None
        self._subscription_path = ""
        self._dlq_topic_path = ""

        # message_id -> deliveries seen, used when Pub/Sub does not count them
        self._attempts: Dict[str, int] = {}

        log_with_context(
            logger,
            logging.INFO,
            "Initialized Pub/Sub broker client",
            project_id=config.project_id,
            subscription_id=config.subscription_id,
        )

    @property
    def supports_dead_letter(self) -> bool:  # type: ignore[override]
        return bool(self.config.dlq_topic_id)

    def _build_client(self, factory: Callable[[], Any], kind: str):
        try:
            return factory()
        except (auth_exceptions.GoogleAuthError, OSError, ValueError) as e:
            raise ConfigurationError(
                f"Failed to create Pub/Sub {kind} client: {e}",
                cause=e,
                context={"credentials_file": self.config.credentials_file},
            ) from e

    async def start(self) -> None:
        """
        Create the subscriber (and dead-letter publisher, if configured).

        Raises:
            ConfigurationError: If the credentials cannot be loaded
        """
        if self._subscriber is not None:
            logger.warning("Broker client already started, ignoring duplicate start call")
            return

        subscriber = await asyncio.to_thread(
            self._build_client, self._subscriber_factory, "subscriber"
        )
        self._subscription_path = subscriber.subscription_path(
            self.config.project_id, self.config.subscription_id
        )
        self._subscriber = subscriber

        if self.supports_dead_letter:
            publisher = await asyncio.to_thread(
                self._build_client, self._publisher_factory, "publisher"
            )
            self._dlq_topic_path = publisher.topic_path(
                self.config.project_id, self.config.dlq_topic_id
            )
            self._publisher = publisher

        log_with_context(
            logger,
            logging.INFO,
            "Pub/Sub broker client started",
            subscription=self._subscription_path,
            dlq_topic=self._dlq_topic_path or None,
        )

    async def stop(self) -> None:
        """Close subscriber and publisher. Safe to call multiple times.

        Unacknowledged messages are redelivered after their ack deadline.
        """
        subscriber, self._subscriber = self._subscriber, None
        publisher, self._publisher = self._publisher, None
        self._attempts.clear()

        try:
            if subscriber is not None:
                await asyncio.to_thread(subscriber.close)
            if publisher is not None:
                await asyncio.to_thread(publisher.stop)
            logger.info("Pub/Sub broker client stopped")
        except gcp_exceptions.GoogleAPIError as e:
            log_exception(logger, e, "Error stopping Pub/Sub broker client")
            raise wrap_broker_exception(e, "Failed to stop Pub/Sub broker client") from e

    def _require_subscriber(self):
        if self._subscriber is None:
            raise BrokerError("Pub/Sub broker client is not started")
        return self._subscriber

    def _error_context(self, message: Optional[Message] = None) -> Dict[str, Any]:
        context: Dict[str, Any] = {"subscription": self._subscription_path}
        if message is not None:
            context["message_id"] = message.message_id
        return context

    async def pull(self, timeout: float) -> Optional[Message]:
        subscriber = self._require_subscriber()

        try:
            response = await asyncio.to_thread(
                subscriber.pull,
                request={"subscription": self._subscription_path, "max_messages": 1},
                timeout=timeout,
            )
        except gcp_exceptions.DeadlineExceeded:
            return None
        except gcp_exceptions.GoogleAPIError as e:
            raise wrap_broker_exception(
                e, "Failed to pull messages", self._error_context()
            ) from e

        if not response.received_messages:
            return None

        received = response.received_messages[0]
        pubsub_message = received.message
        message_id = pubsub_message.message_id

        if received.delivery_attempt:
            attempt = received.delivery_attempt
        else:
            attempt = self._attempts.get(message_id, 0) + 1
            self._attempts[message_id] = attempt

        return Message(
            message_id=message_id,
            payload=bytes(pubsub_message.data),
            handle=received.ack_id,
            delivery_attempt=attempt,
            received_at=datetime.now(timezone.utc),
            attributes=dict(pubsub_message.attributes),
        )

    async def ack(self, message: Message) -> None:
        subscriber = self._require_subscriber()
        try:
            await asyncio.to_thread(
                subscriber.acknowledge,
                request={
                    "subscription": self._subscription_path,
                    "ack_ids": [message.handle],
                },
            )
        except gcp_exceptions.GoogleAPIError as e:
            raise wrap_broker_exception(
                e, "Failed to acknowledge message", self._error_context(message)
            ) from e
        self._attempts.pop(message.message_id, None)

    async def nack(self, message: Message, delay: float = 0.0) -> None:
        subscriber = self._require_subscriber()
        deadline = min(MAX_ACK_DEADLINE_SECONDS, max(0, math.ceil(delay)))
        try:
            await asyncio.to_thread(
                subscriber.modify_ack_deadline,
                request={
                    "subscription": self._subscription_path,
                    "ack_ids": [message.handle],
                    "ack_deadline_seconds": deadline,
                },
            )
        except gcp_exceptions.GoogleAPIError as e:
            raise wrap_broker_exception(
                e, "Failed to modify ack deadline", self._error_context(message)
            ) from e

    async def release(self, message: Message) -> None:
        # Pub/Sub counts the delivery itself; only the local count can be undone
        if self._attempts.get(message.message_id, 0) > 0:
            self._attempts[message.message_id] -= 1
        await self.nack(message, 0.0)

    async def dead_letter(self, message: Message, reason: str) -> None:
        if self._publisher is None:
            await super().dead_letter(message, reason)

        attributes = {
            **message.attributes,
            "dlq_reason": reason,
            "source_subscription": self._subscription_path,
            "source_message_id": message.message_id,
            "delivery_attempt": str(message.delivery_attempt),
        }
        try:
            publish_future = self._publisher.publish(
                self._dlq_topic_path, message.payload, **attributes
            )
            await asyncio.to_thread(
                publish_future.result, timeout=DLQ_PUBLISH_TIMEOUT_SECONDS
            )
        except (gcp_exceptions.GoogleAPIError, futures.TimeoutError) as e:
            await self.nack(message)
            raise wrap_broker_exception(
                e,
                "Failed to publish to dead-letter topic",
                {"topic": self._dlq_topic_path, "message_id": message.message_id},
            ) from e

        await self.ack(message)
