"""
At-least-once consumer loop.

Provides message consumption with:
- Explicit ack/nack per message after processing (at-least-once)
- Decode, dispatch and retry classification of every message
- Shared token-bucket pacing instead of fixed sleeps
- Reconnect with backoff on broker transport errors
- Graceful shutdown: the in-flight message is finalized before exit

Finalization rules:
- Success: ack
- Retryable failure: nack with backoff delay (broker redelivers)
- Fatal failure: dead-letter if the broker supports it, otherwise ack
- Undecodable payload: dead-letter if supported, otherwise nack until the
  attempt ceiling, then ack
- Handler exception: retryable failure with reason "panic: ..."
"""

import asyncio
import logging
import time
from typing import Awaitable, Optional, TypeVar

from event_consumer.broker.base import BrokerClient, Message
from event_consumer.common.exceptions import BrokerError, DecodeError, HandlerError
from event_consumer.common.logging import (
    MessageLogContext,
    get_logger,
    log_exception,
    log_with_context,
    set_log_context,
)
from event_consumer.common.metrics import (
    active_workers,
    record_broker_error,
    record_dead_letter,
    record_decode_error,
    record_outcome,
    record_rate_limiter_wait,
)
from event_consumer.common.resilience import TokenBucketRateLimiter
from event_consumer.config import ConsumerConfig
from event_consumer.handlers.registry import HandlerRegistry
from event_consumer.retry.policy import RetryPolicy
from event_consumer.schemas.events import StorageEvent, decode_event
from event_consumer.schemas.results import ProcessingOutcome

logger = get_logger(__name__)

T = TypeVar("T")

# Metric label for messages that never decoded into an event
UNDECODED_EVENT_TYPE = "unknown"

# Payload bytes included in debug logs
PAYLOAD_LOG_LIMIT = 512


class ConsumerLoop:
    """
    One worker pulling from a broker subscription until shutdown.

    Several loops may share one broker, registry, policy, rate limiter
    and shutdown event; the broker's lease guarantees no two loops hold
    the same message.

    Usage:
        >>> loop = ConsumerLoop(broker, registry, RetryPolicy(), ConsumerConfig())
        >>> task = asyncio.create_task(loop.run())
        >>> ...
        >>> loop.request_stop()
        >>> await task
    """

    def __init__(
        self,
        broker: BrokerClient,
        registry: HandlerRegistry,
        policy: RetryPolicy,
        config: ConsumerConfig,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        shutdown_event: Optional[asyncio.Event] = None,
        worker_id: str = "worker-0",
    ):
        self.broker = broker
        self.registry = registry
        self.policy = policy
        self.config = config
        self.rate_limiter = rate_limiter
        self.worker_id = worker_id
        self._shutdown = shutdown_event or asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def request_stop(self) -> None:
        """Signal shutdown; the loop exits after its in-flight message."""
        self._shutdown.set()

    async def run(self) -> None:
        """
        Pull and process messages until shutdown is signaled.

        Broker errors are absorbed with backoff; any other exception
        escapes and ends this worker.
        """
        set_log_context(worker_id=self.worker_id)
        self._running = True
        active_workers.inc()
        log_with_context(logger, logging.INFO, "Consumer loop started")

        consecutive_failures = 0
        try:
            while not self._shutdown.is_set():
                try:
                    message = await self._broker_call(
                        "pull", self.broker.pull(self.config.pull_timeout_seconds)
                    )
                    consecutive_failures = 0
                    if message is not None:
                        await self.process_message(message)
                except BrokerError:
                    consecutive_failures += 1
                    await self._wait_before_reconnect(consecutive_failures)
        finally:
            self._running = False
            active_workers.dec()
            log_with_context(logger, logging.INFO, "Consumer loop stopped")

    async def process_message(self, message: Message) -> ProcessingOutcome:
        """
        Take one leased message through decode, dispatch and finalization.

        Returns:
            The outcome the message was finalized with

        Raises:
            BrokerError: If the final ack/nack/dead-letter fails
        """
        start = time.perf_counter()

        with MessageLogContext(message_id=message.message_id):
            log_with_context(
                logger,
                logging.DEBUG,
                f"Raw message data: {message.payload[:PAYLOAD_LOG_LIMIT]!r}",
                delivery_attempt=message.delivery_attempt,
                payload_size=len(message.payload),
            )

            if self.rate_limiter is not None:
                acquired = await self._acquire_token()
                if not acquired:
                    await self._broker_call("release", self.broker.release(message))
                    log_with_context(
                        logger,
                        logging.INFO,
                        "Shutdown while waiting for rate limiter, message released",
                    )
                    return ProcessingOutcome.retryable("shutdown")

            attempt = message.delivery_attempt
            if self.policy.is_exhausted(attempt):
                outcome = ProcessingOutcome.fatal(
                    f"delivery attempt {attempt} exceeds max attempts "
                    f"{self.policy.max_attempts}"
                )
                await self._finalize(message, outcome, UNDECODED_EVENT_TYPE, start)
                return outcome

            try:
                event = decode_event(message.payload, message.attributes)
            except DecodeError as e:
                return await self._finalize_decode_failure(message, e, start)

            set_log_context(event_type=event.event_type)
            outcome = await self._invoke_handler(event)
            outcome = self.policy.classify(attempt, outcome)
            await self._finalize(message, outcome, event.event_type, start)
            return outcome

    async def _acquire_token(self) -> bool:
        waited_from = time.perf_counter()
        acquired = await self.rate_limiter.acquire(cancel=self._shutdown)
        record_rate_limiter_wait(time.perf_counter() - waited_from)
        return acquired

    async def _invoke_handler(self, event: StorageEvent) -> ProcessingOutcome:
        try:
            return await self.registry.dispatch(event)
        except HandlerError as e:
            if e.is_retryable:
                return ProcessingOutcome.retryable(e.message)
            return ProcessingOutcome.fatal(e.message)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Handler raised an unhandled exception",
                level=logging.WARNING,
            )
            return ProcessingOutcome.retryable(f"panic: {type(e).__name__}: {e}")

    async def _finalize(
        self,
        message: Message,
        outcome: ProcessingOutcome,
        event_type: str,
        start: float,
    ) -> None:
        attempt = message.delivery_attempt

        if outcome.is_success:
            await self._broker_call("ack", self.broker.ack(message))
            log_with_context(
                logger,
                logging.INFO,
                "Message processed successfully",
                outcome=outcome.status.value,
                delivery_attempt=attempt,
                duration_ms=self._elapsed_ms(start),
            )

        elif outcome.should_redeliver:
            delay = self.policy.backoff_delay(attempt)
            await self._broker_call("nack", self.broker.nack(message, delay))
            log_with_context(
                logger,
                logging.WARNING,
                "Message processing failed, scheduled for redelivery",
                outcome=outcome.status.value,
                reason=outcome.reason,
                delivery_attempt=attempt,
                max_attempts=self.policy.max_attempts,
                retry_delay_s=round(delay, 3),
                duration_ms=self._elapsed_ms(start),
            )

        else:
            if self.broker.supports_dead_letter:
                await self._broker_call(
                    "dead_letter",
                    self.broker.dead_letter(message, outcome.reason or "fatal"),
                )
                record_dead_letter("fatal")
                msg = "Message failed permanently, routed to dead-letter"
            else:
                await self._broker_call("ack", self.broker.ack(message))
                msg = "Message failed permanently, acknowledged to stop redelivery"
            log_with_context(
                logger,
                logging.ERROR,
                msg,
                outcome=outcome.status.value,
                reason=outcome.reason,
                delivery_attempt=attempt,
                max_attempts=self.policy.max_attempts,
                duration_ms=self._elapsed_ms(start),
            )

        record_outcome(event_type, outcome.status.value, time.perf_counter() - start)

    async def _finalize_decode_failure(
        self, message: Message, error: DecodeError, start: float
    ) -> ProcessingOutcome:
        record_decode_error()
        attempt = message.delivery_attempt
        outcome = ProcessingOutcome.fatal(f"decode error: {error.message}")

        if self.broker.supports_dead_letter:
            await self._broker_call(
                "dead_letter", self.broker.dead_letter(message, outcome.reason)
            )
            record_dead_letter("decode")
            action = "routed to dead-letter"
        elif attempt >= self.policy.max_attempts:
            await self._broker_call("ack", self.broker.ack(message))
            action = "acknowledged after max attempts"
        else:
            await self._broker_call(
                "nack",
                self.broker.nack(message, self.policy.backoff_delay(attempt)),
            )
            action = "released for inspection"

        log_exception(
            logger,
            error,
            f"Failed to decode message payload, {action}",
            include_traceback=False,
            outcome=outcome.status.value,
            reason=outcome.reason,
            delivery_attempt=attempt,
            payload_size=len(message.payload),
            duration_ms=self._elapsed_ms(start),
        )
        record_outcome(
            UNDECODED_EVENT_TYPE, outcome.status.value, time.perf_counter() - start
        )
        return outcome

    async def _broker_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except BrokerError as e:
            record_broker_error(operation, e.category.value)
            log_exception(
                logger,
                e,
                f"Broker {operation} failed",
                level=logging.WARNING,
                include_traceback=False,
            )
            raise

    async def _wait_before_reconnect(self, consecutive_failures: int) -> None:
        delay = self.policy.backoff_delay(consecutive_failures)
        log_with_context(
            logger,
            logging.WARNING,
            "Broker unavailable, backing off before next pull",
            consecutive_failures=consecutive_failures,
            retry_delay_s=round(delay, 3),
        )
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 2)
