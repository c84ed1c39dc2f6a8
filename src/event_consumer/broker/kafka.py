"""
Kafka broker client.

Adapts an aiokafka consumer group to the lease-based BrokerClient
boundary:
- Manual offset commit for at-least-once processing
- One leased record per partition; the partition is paused while its
  record is in flight, so no two workers hold records from the same
  partition and commits never skip an unfinished record
- nack seeks back to the record and resumes the partition after the
  requested delay, so the same record is redelivered
- Partitions revoked in a rebalance drop their buffered records and
  leases; the new owner redelivers from the last committed offset
- Optional dead-letter topic served by an aiokafka producer
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Set, Tuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, ConsumerRebalanceListener
from aiokafka.errors import IllegalStateError, KafkaError
from aiokafka.structs import ConsumerRecord, TopicPartition

from event_consumer.broker.base import BrokerClient, Message
from event_consumer.common.exceptions import BrokerError, wrap_broker_exception
from event_consumer.common.logging import get_logger, log_exception, log_with_context
from event_consumer.config import KafkaConfig

logger = get_logger(__name__)

RecordKey = Tuple[str, int, int]


def _record_key(record: ConsumerRecord) -> RecordKey:
    return (record.topic, record.partition, record.offset)


def _partition_of(record: ConsumerRecord) -> TopicPartition:
    return TopicPartition(record.topic, record.partition)


def _decode_headers(record: ConsumerRecord) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for key, value in record.headers or ():
        if value is None:
            continue
        headers[key] = value.decode("utf-8", errors="replace")
    return headers


class _LeaseRevocationListener(ConsumerRebalanceListener):
    """Forgets local state for partitions this member no longer owns."""

    def __init__(self, client: "KafkaBrokerClient"):
        self._client = client

    async def on_partitions_revoked(self, revoked):
        self._client.forget_partitions(revoked)

    async def on_partitions_assigned(self, assigned):
        pass


class KafkaBrokerClient(BrokerClient):
    """
    Lease-based broker client on top of AIOKafkaConsumer.

    Usage:
        >>> config = KafkaConfig.from_env()
        >>> broker = KafkaBrokerClient(config)
        >>> await broker.start()
        >>> message = await broker.pull(timeout=1.0)
        >>> await broker.ack(message)
        >>> await broker.stop()
    """

    def __init__(
        self,
        config: KafkaConfig,
        consumer_factory: Optional[Callable[..., Any]] = None,
        producer_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize Kafka broker client.

        Args:
            config: Kafka configuration
            consumer_factory: Builds the consumer (default: AIOKafkaConsumer)
            producer_factory: Builds the dead-letter producer
                (default: AIOKafkaProducer)
        """
        self.config = config
        self._consumer_factory = consumer_factory or AIOKafkaConsumer
        self._producer_factory = producer_factory or AIOKafkaProducer
        self._consumer = None
        self._producer = None
        self._rebalance_listener = _LeaseRevocationListener(self)

        self._buffer: Deque[ConsumerRecord] = deque()
        # Partition -> the message currently leased from it
        self._leased: Dict[TopicPartition, Message] = {}
        self._attempts: Dict[RecordKey, int] = {}
        self._fetch_lock = asyncio.Lock()

        log_with_context(
            logger,
            logging.INFO,
            "Initialized Kafka broker client",
            topic=config.topic,
            group_id=config.group_id,
        )

    @property
    def supports_dead_letter(self) -> bool:  # type: ignore[override]
        return bool(self.config.dlq_topic)

    def _connection_config(self) -> Dict[str, Any]:
        connection: Dict[str, Any] = {
            "bootstrap_servers": self.config.bootstrap_servers,
            "request_timeout_ms": self.config.request_timeout_ms,
        }
        if self.config.security_protocol != "PLAINTEXT":
            connection["security_protocol"] = self.config.security_protocol
            connection["sasl_mechanism"] = self.config.sasl_mechanism
            if self.config.sasl_mechanism == "PLAIN":
                connection["sasl_plain_username"] = self.config.sasl_plain_username
                connection["sasl_plain_password"] = self.config.sasl_plain_password
        return connection

    async def start(self) -> None:
        """
        Connect the consumer (and dead-letter producer, if configured).

        Raises:
            BrokerError: If the cluster cannot be reached
        """
        if self._consumer is not None:
            logger.warning("Broker client already started, ignoring duplicate start call")
            return

        consumer_config = {
            **self._connection_config(),
            "group_id": self.config.group_id,
            "enable_auto_commit": False,
            "auto_offset_reset": self.config.auto_offset_reset,
            "max_poll_records": self.config.max_poll_records,
            "max_poll_interval_ms": self.config.max_poll_interval_ms,
            "session_timeout_ms": self.config.session_timeout_ms,
        }

        consumer = self._consumer_factory(**consumer_config)
        try:
            await consumer.start()
            consumer.subscribe(
                [self.config.topic], listener=self._rebalance_listener
            )
        except KafkaError as e:
            raise wrap_broker_exception(
                e, "Failed to start Kafka consumer", {"topic": self.config.topic}
            ) from e
        self._consumer = consumer

        if self.supports_dead_letter:
            producer = self._producer_factory(
                **self._connection_config(), acks="all"
            )
            try:
                await producer.start()
            except KafkaError as e:
                raise wrap_broker_exception(
                    e,
                    "Failed to start dead-letter producer",
                    {"topic": self.config.dlq_topic},
                ) from e
            self._producer = producer

        log_with_context(
            logger,
            logging.INFO,
            "Kafka broker client started",
            topic=self.config.topic,
            group_id=self.config.group_id,
        )

    async def stop(self) -> None:
        """
        Close consumer and producer. Safe to call multiple times.

        Uncommitted records are redelivered to the group after restart.
        """
        consumer, self._consumer = self._consumer, None
        producer, self._producer = self._producer, None
        self._buffer.clear()
        self._leased.clear()
        self._attempts.clear()

        try:
            if consumer is not None:
                await consumer.stop()
            if producer is not None:
                await producer.stop()
            logger.info("Kafka broker client stopped")
        except KafkaError as e:
            log_exception(logger, e, "Error stopping Kafka broker client")
            raise wrap_broker_exception(e, "Failed to stop Kafka broker client") from e

    def forget_partitions(self, partitions: Iterable[TopicPartition]) -> None:
        """
        Drop buffered records, leases and attempt counts for partitions
        that were revoked from this consumer.

        Workers still holding a record from one of these partitions find
        their lease gone; their ack/nack becomes a no-op and the new owner
        redelivers the record.
        """
        revoked: Set[Tuple[str, int]] = {(tp.topic, tp.partition) for tp in partitions}
        if not revoked:
            return

        buffered = len(self._buffer)
        self._buffer = deque(
            r for r in self._buffer if (r.topic, r.partition) not in revoked
        )
        lost_leases = [tp for tp in self._leased if (tp.topic, tp.partition) in revoked]
        for tp in lost_leases:
            del self._leased[tp]
        for key in [k for k in self._attempts if (k[0], k[1]) in revoked]:
            del self._attempts[key]

        log_with_context(
            logger,
            logging.INFO,
            "Partitions revoked, dropped local state",
            partitions=sorted(f"{topic}:{partition}" for topic, partition in revoked),
            dropped_records=buffered - len(self._buffer),
            lost_leases=len(lost_leases),
        )

    def _require_consumer(self):
        if self._consumer is None:
            raise BrokerError("Kafka broker client is not started")
        return self._consumer

    def _assignment(self) -> Set[TopicPartition]:
        consumer = self._require_consumer()
        try:
            return set(consumer.assignment())
        except (KafkaError, IllegalStateError) as e:
            raise wrap_broker_exception(
                e, "Failed to read partition assignment", {"topic": self.config.topic}
            ) from e

    def _next_available(self, assignment: Set[TopicPartition]) -> Optional[ConsumerRecord]:
        """Pop the oldest buffered record whose partition is assigned and not leased.

        Records from partitions no longer assigned are discarded.
        """
        if any(_partition_of(r) not in assignment for r in self._buffer):
            self._buffer = deque(
                r for r in self._buffer if _partition_of(r) in assignment
            )
        for index, record in enumerate(self._buffer):
            if _partition_of(record) not in self._leased:
                del self._buffer[index]
                return record
        return None

    async def pull(self, timeout: float) -> Optional[Message]:
        consumer = self._require_consumer()

        record = self._next_available(self._assignment())
        if record is None:
            async with self._fetch_lock:
                record = self._next_available(self._assignment())
                if record is None:
                    try:
                        data = await consumer.getmany(
                            timeout_ms=int(timeout * 1000),
                            max_records=self.config.max_poll_records,
                        )
                    except KafkaError as e:
                        raise wrap_broker_exception(
                            e, "Failed to fetch records", {"topic": self.config.topic}
                        ) from e
                    for records in data.values():
                        self._buffer.extend(records)
                    record = self._next_available(self._assignment())

        if record is None:
            return None

        tp = _partition_of(record)
        try:
            consumer.pause(tp)
        except (KafkaError, IllegalStateError) as e:
            self._buffer.appendleft(record)
            raise wrap_broker_exception(
                e,
                "Failed to pause partition",
                {"topic": record.topic, "partition": record.partition},
            ) from e

        key = _record_key(record)
        attempt = self._attempts.get(key, 0) + 1
        self._attempts[key] = attempt

        message = Message(
            message_id=f"{record.topic}:{record.partition}:{record.offset}",
            payload=record.value or b"",
            handle=record,
            delivery_attempt=attempt,
            received_at=datetime.now(timezone.utc),
            attributes=_decode_headers(record),
        )
        self._leased[tp] = message
        return message

    def _holds_lease(self, message: Message) -> bool:
        return self._leased.get(_partition_of(message.handle)) is message

    def _log_lost_lease(self, record: ConsumerRecord, operation: str) -> None:
        log_with_context(
            logger,
            logging.WARNING,
            f"Lease lost to rebalance, skipping {operation}",
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
        )

    def _release_partition(self, tp: TopicPartition) -> None:
        self._leased.pop(tp, None)
        if self._consumer is None:
            return
        try:
            if tp in self._consumer.assignment():
                self._consumer.resume(tp)
        except (KafkaError, IllegalStateError) as e:
            raise wrap_broker_exception(
                e,
                "Failed to resume partition",
                {"topic": tp.topic, "partition": tp.partition},
            ) from e

    def _release_partition_later(self, tp: TopicPartition, message: Message) -> None:
        # A rebalance may have handed the partition to a newer lease meanwhile
        if self._leased.get(tp) is not message:
            return
        try:
            self._release_partition(tp)
        except BrokerError as e:
            log_exception(
                logger,
                e,
                "Failed to resume partition after redelivery delay",
                level=logging.WARNING,
                include_traceback=False,
            )

    def _rewind(self, record: ConsumerRecord) -> None:
        """Move the partition position back so the record is fetched again."""
        # Records buffered behind this one are refetched after the seek
        self._buffer = deque(
            r for r in self._buffer
            if (r.topic, r.partition) != (record.topic, record.partition)
        )
        tp = _partition_of(record)
        try:
            self._require_consumer().seek(tp, record.offset)
        except (KafkaError, AssertionError, ValueError) as e:
            raise wrap_broker_exception(
                e,
                "Failed to seek partition for redelivery",
                {"topic": record.topic, "partition": record.partition},
            ) from e

    async def ack(self, message: Message) -> None:
        consumer = self._require_consumer()
        record: ConsumerRecord = message.handle
        if not self._holds_lease(message):
            self._log_lost_lease(record, "ack")
            return
        tp = _partition_of(record)

        try:
            await consumer.commit({tp: record.offset + 1})
        except KafkaError as e:
            self._rewind(record)
            raise wrap_broker_exception(
                e,
                "Failed to commit offset",
                {"topic": record.topic, "partition": record.partition},
            ) from e
        finally:
            self._release_partition(tp)
        self._attempts.pop(_record_key(record), None)

    async def nack(self, message: Message, delay: float = 0.0) -> None:
        record: ConsumerRecord = message.handle
        if not self._holds_lease(message):
            self._log_lost_lease(record, "nack")
            return
        tp = _partition_of(record)

        try:
            self._rewind(record)
        except BrokerError:
            self._release_partition(tp)
            raise

        if delay > 0:
            asyncio.get_running_loop().call_later(
                delay, self._release_partition_later, tp, message
            )
        else:
            self._release_partition(tp)

    async def release(self, message: Message) -> None:
        # The delivery was counted on pull; give it back before rewinding
        key = _record_key(message.handle)
        if self._holds_lease(message) and key in self._attempts:
            self._attempts[key] -= 1
        await self.nack(message, 0.0)

    async def dead_letter(self, message: Message, reason: str) -> None:
        if self._producer is None:
            await super().dead_letter(message, reason)
        record: ConsumerRecord = message.handle
        if not self._holds_lease(message):
            self._log_lost_lease(record, "dead-letter")
            return

        headers = [
            ("dlq_reason", reason.encode("utf-8")),
            ("source_topic", record.topic.encode("utf-8")),
            ("source_partition", str(record.partition).encode("utf-8")),
            ("source_offset", str(record.offset).encode("utf-8")),
            ("delivery_attempt", str(message.delivery_attempt).encode("utf-8")),
        ]
        try:
            await self._producer.send_and_wait(
                self.config.dlq_topic,
                value=message.payload,
                key=record.key,
                headers=headers,
            )
        except KafkaError as e:
            await self.nack(message)
            raise wrap_broker_exception(
                e,
                "Failed to publish to dead-letter topic",
                {"topic": self.config.dlq_topic},
            ) from e

        await self.ack(message)
