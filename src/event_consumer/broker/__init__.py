"""
Broker transports for event_consumer.

Provides:
    - BrokerClient: lease-based pull/ack/nack boundary
    - InMemoryBroker: in-process queue for development and tests
    - KafkaBrokerClient: aiokafka consumer group transport
    - PubSubBrokerClient: Google Cloud Pub/Sub pull subscription transport

The Kafka and Pub/Sub transports are imported from their own modules so
that only the selected client library needs to load.
"""

from event_consumer.broker.base import BrokerClient, Message
from event_consumer.broker.memory import InMemoryBroker

__all__ = [
    "BrokerClient",
    "Message",
    "InMemoryBroker",
]
