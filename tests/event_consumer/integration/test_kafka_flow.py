"""
Integration tests for the Kafka transport end-to-end.

Uses Testcontainers to run a real Kafka instance and verifies:
- Success -> offset committed, message not redelivered
- Retryable failure -> same record redelivered with next attempt
- Malformed payload with a DLQ topic -> routed to the dead-letter topic

Requires Docker. Set RUN_KAFKA_INTEGRATION=1 to enable.
"""

import asyncio
import json
import os
import uuid
from typing import Generator

import pytest

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.getenv("RUN_KAFKA_INTEGRATION") != "1",
        reason="set RUN_KAFKA_INTEGRATION=1 to run Kafka integration tests",
    ),
]

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer  # noqa: E402

from event_consumer.broker.kafka import KafkaBrokerClient  # noqa: E402
from event_consumer.config import ConsumerConfig, KafkaConfig  # noqa: E402
from event_consumer.handlers.registry import HandlerRegistry  # noqa: E402
from event_consumer.schemas.results import ProcessingOutcome  # noqa: E402
from event_consumer.workers import ConsumerPool  # noqa: E402


@pytest.fixture(scope="module")
def bootstrap_servers() -> Generator[str, None, None]:
    """Start a Kafka container shared by the tests in this module."""
    from testcontainers.kafka import KafkaContainer

    kafka = KafkaContainer()
    kafka.start()
    yield kafka.get_bootstrap_server()
    kafka.stop()


def make_kafka_config(bootstrap_servers: str, dlq: bool = False) -> KafkaConfig:
    topic = f"storage.events.{uuid.uuid4().hex[:8]}"
    return KafkaConfig(
        bootstrap_servers=bootstrap_servers,
        topic=topic,
        group_id=f"test-{uuid.uuid4().hex[:8]}",
        dlq_topic=f"{topic}.dlq" if dlq else "",
    )


async def produce(bootstrap_servers: str, topic: str, *payloads: bytes) -> None:
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        for payload in payloads:
            await producer.send_and_wait(topic, payload)
    finally:
        await producer.stop()


async def run_pool_until(pool: ConsumerPool, predicate, timeout: float = 30.0) -> None:
    task = asyncio.create_task(pool.run())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while not predicate():
            if loop.time() > deadline or task.done():
                raise AssertionError("condition not reached")
            await asyncio.sleep(0.1)
    finally:
        pool.shutdown()
        await asyncio.wait_for(task, timeout=10.0)


def consumer_config(kafka: KafkaConfig) -> ConsumerConfig:
    return ConsumerConfig(
        worker_count=2,
        base_backoff_seconds=0.05,
        rate_limit_per_second=None,
        pull_timeout_seconds=0.5,
        kafka=kafka,
    )


@pytest.mark.asyncio
class TestKafkaFlow:
    async def test_success_commits_offset(self, bootstrap_servers):
        kafka = make_kafka_config(bootstrap_servers)
        await produce(
            bootstrap_servers,
            kafka.topic,
            json.dumps({"bucket": "b1", "name": "clip.mp4", "size": "120"}).encode(),
        )

        handled = []
        registry = HandlerRegistry()
        registry.register("OBJECT_FINALIZE", lambda event: handled.append(event))

        broker = KafkaBrokerClient(kafka)
        await broker.start()
        try:
            pool = ConsumerPool(broker, registry, consumer_config(kafka))
            await run_pool_until(pool, lambda: len(handled) == 1)
        finally:
            await broker.stop()

        assert handled[0].size == 120

        # A fresh member of the same group sees nothing left to consume
        broker = KafkaBrokerClient(kafka)
        await broker.start()
        try:
            assert await broker.pull(timeout=3.0) is None
        finally:
            await broker.stop()

    async def test_retryable_failure_redelivers(self, bootstrap_servers):
        kafka = make_kafka_config(bootstrap_servers)
        await produce(
            bootstrap_servers,
            kafka.topic,
            json.dumps({"bucket": "b1", "name": "flaky.mp4", "size": "1"}).encode(),
        )

        attempts = []
        registry = HandlerRegistry()

        def handler(event):
            attempts.append(event.name)
            if len(attempts) == 1:
                return ProcessingOutcome.retryable("busy")
            return ProcessingOutcome.success()

        registry.register("OBJECT_FINALIZE", handler)

        broker = KafkaBrokerClient(kafka)
        await broker.start()
        try:
            pool = ConsumerPool(broker, registry, consumer_config(kafka))
            await run_pool_until(pool, lambda: len(attempts) == 2)
        finally:
            await broker.stop()

        assert attempts == ["flaky.mp4", "flaky.mp4"]

    async def test_malformed_payload_dead_lettered(self, bootstrap_servers):
        kafka = make_kafka_config(bootstrap_servers, dlq=True)
        await produce(bootstrap_servers, kafka.topic, b"not-json")

        registry = HandlerRegistry()
        broker = KafkaBrokerClient(kafka)
        await broker.start()

        dlq_consumer = AIOKafkaConsumer(
            kafka.dlq_topic,
            bootstrap_servers=bootstrap_servers,
            auto_offset_reset="earliest",
            group_id=f"dlq-{uuid.uuid4().hex[:8]}",
        )
        await dlq_consumer.start()
        dead_lettered = []

        async def collect():
            async for record in dlq_consumer:
                dead_lettered.append(record)

        collector = asyncio.create_task(collect())
        try:
            pool = ConsumerPool(broker, registry, consumer_config(kafka))
            await run_pool_until(pool, lambda: len(dead_lettered) == 1)
        finally:
            collector.cancel()
            await asyncio.gather(collector, return_exceptions=True)
            await dlq_consumer.stop()
            await broker.stop()

        record = dead_lettered[0]
        assert record.value == b"not-json"
        headers = dict(record.headers)
        assert headers["dlq_reason"].startswith(b"decode error")
