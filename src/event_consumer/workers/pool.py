"""
Worker pool running N consumer loops against one subscription.

All loops share the broker client, handler registry, retry policy,
rate limiter and a single shutdown event. Setting the event stops every
loop after its in-flight message; the pool returns once all have exited.
"""

import asyncio
import logging
from typing import List, Optional

from event_consumer.broker.base import BrokerClient
from event_consumer.common.logging import get_logger, log_exception, log_with_context
from event_consumer.common.resilience import TokenBucketRateLimiter
from event_consumer.config import ConsumerConfig
from event_consumer.consumer import ConsumerLoop
from event_consumer.handlers.registry import HandlerRegistry
from event_consumer.retry.policy import RetryPolicy

logger = get_logger(__name__)


class ConsumerPool:
    """
    Runs config.worker_count consumer loops concurrently.

    A rate limiter is built from the config unless one is passed in or
    throttling is disabled (rate_limit_per_second is None).

    If a loop crashes with a non-broker error, shutdown is signaled, the
    remaining loops are allowed to finish their in-flight message, and
    the error is re-raised from run().
    """

    def __init__(
        self,
        broker: BrokerClient,
        registry: HandlerRegistry,
        config: ConsumerConfig,
        policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.broker = broker
        self.registry = registry
        self.config = config
        self.policy = policy or RetryPolicy.from_config(config)

        if rate_limiter is None and config.rate_limit_per_second is not None:
            rate_limiter = TokenBucketRateLimiter(
                rate=config.rate_limit_per_second,
                capacity=config.effective_burst,
            )
        self.rate_limiter = rate_limiter

        self.shutdown_event = shutdown_event or asyncio.Event()
        self.loops: List[ConsumerLoop] = [
            ConsumerLoop(
                broker=broker,
                registry=registry,
                policy=self.policy,
                config=config,
                rate_limiter=self.rate_limiter,
                shutdown_event=self.shutdown_event,
                worker_id=f"worker-{index}",
            )
            for index in range(config.worker_count)
        ]

    @property
    def is_shutting_down(self) -> bool:
        return self.shutdown_event.is_set()

    def shutdown(self) -> None:
        """Signal every loop to stop after its in-flight message."""
        if not self.shutdown_event.is_set():
            logger.info("Shutdown requested for consumer pool")
            self.shutdown_event.set()

    async def run(self) -> None:
        """Run all loops until shutdown or the first crash."""
        log_with_context(
            logger,
            logging.INFO,
            "Starting consumer pool",
            worker_count=len(self.loops),
            max_attempts=self.policy.max_attempts,
        )

        tasks = [
            asyncio.create_task(loop.run(), name=loop.worker_id) for loop in self.loops
        ]

        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            logger.info("Consumer pool cancelled, waiting for workers to stop")
            self.shutdown()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failed = [t for t in done if not t.cancelled() and t.exception() is not None]
        if failed:
            error = failed[0].exception()
            log_exception(
                logger,
                error,
                f"Worker {failed[0].get_name()} crashed, stopping pool",
            )
            self.shutdown()
            await asyncio.gather(*pending, return_exceptions=True)
            raise error

        logger.info("Consumer pool stopped")
