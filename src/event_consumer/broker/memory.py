"""
In-process broker for development and tests.

Behaves like a managed queue subscription: pulled messages are leased
to a single caller, nacked messages are redelivered after the requested
delay with an incremented delivery attempt, and acked messages are gone.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from event_consumer.broker.base import BrokerClient, Message
from event_consumer.common.exceptions import BrokerError
from event_consumer.common.logging import get_logger, log_with_context

logger = get_logger(__name__)


class InMemoryBroker(BrokerClient):
    """
    asyncio.Queue-backed broker.

    Records every ack, nack, release and dead-letter so callers can assert on
    delivery behavior.

    Usage:
        >>> broker = InMemoryBroker()
        >>> broker.publish(b'{"bucket": "b1", "name": "a.mp4", "size": "1"}')
        >>> message = await broker.pull(timeout=1.0)
        >>> await broker.ack(message)
    """

    def __init__(self, dead_letter_enabled: bool = False):
        self.supports_dead_letter = dead_letter_enabled
        self._queue: "asyncio.Queue[Message]" = asyncio.Queue()
        self._leased: Dict[str, Message] = {}
        # message_id -> timer for nacked messages still inside their delay
        self._pending_redeliveries: Dict[str, asyncio.TimerHandle] = {}

        self.acked: List[Message] = []
        self.nacked: List[Tuple[Message, float]] = []
        self.released: List[Message] = []
        self.dead_letters: List[Tuple[Message, str]] = []

    def publish(
        self,
        payload: bytes,
        attributes: Optional[Mapping[str, str]] = None,
        message_id: Optional[str] = None,
        delivery_attempt: int = 1,
    ) -> str:
        """
        Enqueue a message.

        Args:
            payload: Raw message bytes
            attributes: Optional message attributes
            message_id: Identifier to use (generated if omitted)
            delivery_attempt: Starting delivery attempt, for simulating
                messages that have already been redelivered

        Returns:
            The message identifier
        """
        message_id = message_id or uuid.uuid4().hex
        self._queue.put_nowait(
            Message(
                message_id=message_id,
                payload=payload,
                handle=message_id,
                delivery_attempt=delivery_attempt,
                attributes=dict(attributes or {}),
            )
        )
        return message_id

    @property
    def pending_count(self) -> int:
        """Messages waiting to be pulled."""
        return self._queue.qsize()

    @property
    def leased_count(self) -> int:
        """Messages currently leased to a caller."""
        return len(self._leased)

    @property
    def scheduled_count(self) -> int:
        """Nacked messages waiting out their redelivery delay."""
        return len(self._pending_redeliveries)

    async def pull(self, timeout: float) -> Optional[Message]:
        try:
            queued = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        message = replace(queued, received_at=datetime.now(timezone.utc))
        self._leased[message.message_id] = message
        return message

    def _release(self, message: Message) -> Message:
        leased = self._leased.pop(message.message_id, None)
        if leased is None:
            raise BrokerError(
                f"Message '{message.message_id}' is not leased",
                context={"message_id": message.message_id},
            )
        return leased

    async def ack(self, message: Message) -> None:
        self._release(message)
        self.acked.append(message)

    async def nack(self, message: Message, delay: float = 0.0) -> None:
        leased = self._release(message)
        self.nacked.append((message, delay))

        redelivery = replace(leased, delivery_attempt=leased.delivery_attempt + 1)
        if delay > 0:
            loop = asyncio.get_running_loop()
            self._pending_redeliveries[redelivery.message_id] = loop.call_later(
                delay, self._redeliver, redelivery
            )
        else:
            self._queue.put_nowait(redelivery)

        log_with_context(
            logger,
            logging.DEBUG,
            "Message scheduled for redelivery",
            delivery_attempt=redelivery.delivery_attempt,
            retry_delay_s=delay,
        )

    def _redeliver(self, message: Message) -> None:
        self._pending_redeliveries.pop(message.message_id, None)
        self._queue.put_nowait(message)

    async def release(self, message: Message) -> None:
        """Requeue a leased message without counting the delivery."""
        leased = self._release(message)
        self.released.append(message)
        self._queue.put_nowait(leased)

    async def dead_letter(self, message: Message, reason: str) -> None:
        if not self.supports_dead_letter:
            await super().dead_letter(message, reason)
        self._release(message)
        self.dead_letters.append((message, reason))

    async def stop(self) -> None:
        """Cancel redeliveries that have not fired yet."""
        for handle in self._pending_redeliveries.values():
            handle.cancel()
        self._pending_redeliveries.clear()
