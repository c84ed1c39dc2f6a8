"""
Broker client boundary.

The consumer core talks to a message broker only through BrokerClient.
A pulled Message is leased to exactly one caller until it is acked,
nacked or dead-lettered; the broker owns redelivery.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class Message:
    """A message leased from the broker for one processing attempt.

    Attributes:
        message_id: Broker-assigned identifier, used in logs
        payload: Opaque payload bytes
        handle: Broker-specific acknowledgment handle
        delivery_attempt: 1-based delivery count for this message
        received_at: When this delivery was pulled (UTC)
        attributes: Broker message attributes / headers
    """

    message_id: str
    payload: bytes
    handle: Any = None
    delivery_attempt: int = 1
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attributes: Dict[str, str] = field(default_factory=dict)


class BrokerClient(ABC):
    """
    Abstract broker transport.

    Implementations raise BrokerError for transport failures. start() and
    stop() are no-ops unless the transport holds connections.
    """

    supports_dead_letter: bool = False

    async def start(self) -> None:
        """Open connections to the broker."""

    async def stop(self) -> None:
        """Close connections to the broker."""

    @abstractmethod
    async def pull(self, timeout: float) -> Optional[Message]:
        """
        Lease the next available message.

        Args:
            timeout: Maximum seconds to wait for a message

        Returns:
            A leased Message, or None if none arrived within timeout
        """

    @abstractmethod
    async def ack(self, message: Message) -> None:
        """Acknowledge a leased message; it will not be redelivered."""

    @abstractmethod
    async def nack(self, message: Message, delay: float = 0.0) -> None:
        """
        Release a leased message for redelivery.

        Args:
            message: Leased message
            delay: Seconds before the broker should redeliver it. Transports
                that cannot delay redelivery ignore this.
        """

    async def release(self, message: Message) -> None:
        """
        Hand a leased message back unprocessed.

        Used when shutdown interrupts a worker before processing starts.
        Transports that track attempts locally do not count the delivery;
        transports whose broker counts deliveries fall back to nack(0).
        """
        await self.nack(message, 0.0)

    async def dead_letter(self, message: Message, reason: str) -> None:
        """
        Route a leased message to the dead-letter destination and release it.

        Only called when supports_dead_letter is True.
        """
        raise NotImplementedError(
            f"{type(self).__name__} does not support dead-lettering"
        )
