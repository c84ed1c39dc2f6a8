"""
Entry point for running the event consumer.

Usage:
    # Run with defaults from environment / .env
    python -m event_consumer

    # Override worker count
    python -m event_consumer --workers 8

    # Run with metrics server on a custom port
    python -m event_consumer --metrics-port 9000

    # Run against a local plaintext broker (localhost:9092)
    python -m event_consumer --dev

    # Pull from a Google Cloud Pub/Sub subscription
    python -m event_consumer --transport pubsub
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from prometheus_client import start_http_server

from event_consumer.common.exceptions import ConfigurationError
from event_consumer.common.logging import get_logger, setup_logging
from event_consumer.broker.base import BrokerClient
from event_consumer.config import ConsumerConfig, KafkaConfig, PubSubConfig
from event_consumer.handlers import get_handler_registry
from event_consumer.workers import ConsumerPool

DEV_BOOTSTRAP_SERVERS = "localhost:9092"

TRANSPORTS = ("kafka", "pubsub")

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers, shared by every consumer loop
_shutdown_event: Optional[asyncio.Event] = None


def get_shutdown_event() -> asyncio.Event:
    """Get or create the global shutdown event."""
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the storage event consumer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with 8 workers
    python -m event_consumer --workers 8

    # Run in development mode (local Kafka)
    python -m event_consumer --dev --log-level DEBUG
        """,
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of consumer loops (default: CONSUMER_WORKER_COUNT or 4)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Console log level (default: INFO)",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for log files (default: LOG_DIR or ./logs)",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help=f"Development mode: local plaintext Kafka at {DEV_BOOTSTRAP_SERVERS}",
    )
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=os.getenv("CONSUMER_TRANSPORT", "kafka").lower(),
        help="Broker transport (default: CONSUMER_TRANSPORT or kafka)",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ConsumerConfig:
    """
    Build the consumer configuration from environment and CLI overrides.

    Raises:
        ConfigurationError: If required settings are missing or invalid
    """
    if args.transport not in TRANSPORTS:
        raise ConfigurationError(
            f"Unknown transport '{args.transport}', expected one of {TRANSPORTS}"
        )

    if args.transport == "pubsub":
        config = ConsumerConfig.from_env(pubsub=PubSubConfig.from_env())
    else:
        if args.dev and not os.getenv("KAFKA_BOOTSTRAP_SERVERS"):
            os.environ["KAFKA_BOOTSTRAP_SERVERS"] = DEV_BOOTSTRAP_SERVERS
        config = ConsumerConfig.from_env(kafka=KafkaConfig.from_env())
    if args.workers is not None:
        config = dataclasses.replace(config, worker_count=args.workers)
    return config


def create_broker(config: ConsumerConfig) -> BrokerClient:
    """Build the broker client for whichever transport is configured."""
    if config.pubsub is not None:
        from event_consumer.broker.pubsub import PubSubBrokerClient

        return PubSubBrokerClient(config.pubsub)

    from event_consumer.broker.kafka import KafkaBrokerClient

    return KafkaBrokerClient(config.kafka)


async def run_consumer(config: ConsumerConfig) -> None:
    """Start the configured broker client and run the pool until shutdown."""
    broker = create_broker(config)
    await broker.start()
    try:
        pool = ConsumerPool(
            broker=broker,
            registry=get_handler_registry(),
            config=config,
            shutdown_event=get_shutdown_event(),
        )
        await pool.run()
    finally:
        await broker.stop()


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown.

    First SIGINT/SIGTERM sets the shutdown event: every loop finalizes its
    in-flight message and exits. A second signal cancels all tasks.

    Signal handlers are not supported on Windows; KeyboardInterrupt is
    used there instead.
    """

    def handle_signal(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def main(argv=None) -> int:
    """Main entry point. Returns the process exit code."""
    global logger
    load_dotenv()
    args = parse_args(argv)

    # JSON_LOGS=false gives human-readable file logs during local development
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))

    setup_logging(
        name="event_consumer",
        log_dir=log_dir,
        json_format=json_logs,
        console_level=getattr(logging, args.log_level),
    )
    logger = get_logger(__name__)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Use --dev to run against a local broker")
        return 1

    if args.dev and args.transport == "kafka":
        logger.info("Running in DEVELOPMENT mode (local Kafka)")
    logger.info(f"Using {args.transport} transport")

    logger.info(f"Starting metrics server on port {args.metrics_port}")
    start_http_server(args.metrics_port)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    try:
        loop.run_until_complete(run_consumer(config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Consumer cancelled, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        loop.close()
        logger.info("Event consumer shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
