"""Tests for ConsumerPool worker management and shutdown."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from event_consumer.common.resilience import TokenBucketRateLimiter
from event_consumer.config import ConsumerConfig
from event_consumer.schemas.results import ProcessingOutcome
from event_consumer.workers import ConsumerPool


def payload(name):
    return json.dumps({"bucket": "b1", "name": name, "size": "1"}).encode()


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


class TestConsumerPoolConstruction:
    def test_default_worker_count(self, broker, registry):
        pool = ConsumerPool(broker, registry, ConsumerConfig())

        assert len(pool.loops) == 4
        assert [loop.worker_id for loop in pool.loops] == [
            "worker-0",
            "worker-1",
            "worker-2",
            "worker-3",
        ]

    def test_loops_share_dependencies(self, broker, registry):
        pool = ConsumerPool(broker, registry, ConsumerConfig(worker_count=3))

        assert all(loop.policy is pool.policy for loop in pool.loops)
        assert all(loop.rate_limiter is pool.rate_limiter for loop in pool.loops)
        assert all(loop._shutdown is pool.shutdown_event for loop in pool.loops)

    def test_rate_limiter_built_from_config(self, broker, registry):
        config = ConsumerConfig(rate_limit_per_second=5, rate_limit_burst=2)

        pool = ConsumerPool(broker, registry, config)

        assert pool.rate_limiter.rate == 5
        assert pool.rate_limiter.capacity == 2

    def test_rate_limiting_disabled(self, broker, registry, consumer_config):
        pool = ConsumerPool(broker, registry, consumer_config)
        assert pool.rate_limiter is None

    def test_explicit_rate_limiter_used(self, broker, registry):
        limiter = TokenBucketRateLimiter(rate=1)

        pool = ConsumerPool(broker, registry, ConsumerConfig(), rate_limiter=limiter)

        assert pool.rate_limiter is limiter

    def test_policy_from_config(self, broker, registry):
        pool = ConsumerPool(broker, registry, ConsumerConfig(max_attempts=3))
        assert pool.policy.max_attempts == 3


@pytest.mark.asyncio
class TestConsumerPoolRun:
    async def test_processes_messages_across_workers(
        self, broker, registry, consumer_config
    ):
        handled = []

        async def handler(event):
            handled.append(event.name)
            await asyncio.sleep(0.01)
            return ProcessingOutcome.success()

        registry.register("OBJECT_FINALIZE", handler)
        for index in range(10):
            broker.publish(payload(f"clip-{index}.mp4"))
        pool = ConsumerPool(broker, registry, consumer_config)

        task = asyncio.create_task(pool.run())
        await wait_until(lambda: len(broker.acked) == 10)
        pool.shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        assert sorted(handled) == sorted(f"clip-{i}.mp4" for i in range(10))
        assert broker.leased_count == 0

    async def test_shutdown_finishes_in_flight_message(
        self, broker, registry, consumer_config
    ):
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(event):
            started.set()
            await release.wait()
            return ProcessingOutcome.success()

        registry.register("OBJECT_FINALIZE", handler)
        broker.publish(payload("slow.mp4"))
        pool = ConsumerPool(broker, registry, consumer_config)

        task = asyncio.create_task(pool.run())
        await asyncio.wait_for(started.wait(), timeout=1.0)
        pool.shutdown()
        await asyncio.sleep(0.02)
        assert not task.done()

        release.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(broker.acked) == 1
        assert all(not loop.is_running for loop in pool.loops)

    async def test_shared_external_shutdown_event(
        self, broker, registry, consumer_config
    ):
        shutdown = asyncio.Event()
        pool = ConsumerPool(broker, registry, consumer_config, shutdown_event=shutdown)

        task = asyncio.create_task(pool.run())
        await asyncio.sleep(0.02)
        shutdown.set()

        await asyncio.wait_for(task, timeout=1.0)
        assert pool.is_shutting_down

    async def test_worker_crash_stops_pool_and_reraises(
        self, broker, registry, consumer_config
    ):
        pool = ConsumerPool(broker, registry, consumer_config)
        for loop in pool.loops:
            loop.process_message = AsyncMock(side_effect=RuntimeError("bug"))
        broker.publish(payload("a.mp4"))

        with pytest.raises(RuntimeError, match="bug"):
            await asyncio.wait_for(pool.run(), timeout=1.0)

        assert pool.is_shutting_down

    async def test_cancel_stops_workers(self, broker, registry, consumer_config):
        pool = ConsumerPool(broker, registry, consumer_config)

        task = asyncio.create_task(pool.run())
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert pool.is_shutting_down
