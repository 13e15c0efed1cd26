"""
Notification worker process entry point.

Thin orchestration layer: loads configuration, starts the health listener,
connects to the broker with exponential backoff and consumes until SIGINT or
SIGTERM. Message handling is delegated to NotificationConsumer and
NotificationProcessor.

Exit codes:
    0 - clean shutdown
    1 - broker connection could not be established
    2 - invalid configuration
    3 - health listener could not bind its port
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from config import WorkerConfig, load_config
from domain.errors import BrokerConnectionError, ConfigError
from domain.notification_processor import NotificationProcessor
from integrations.broker import NotificationConsumer
from integrations.health import HealthServer
from services.email import create_email_sender

EXIT_OK = 0
EXIT_CONNECTION_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_LISTENER_ERROR = 3

logger = logging.getLogger(__name__)


def configure_logging(level: str = 'INFO') -> None:
    """Configure the root logger once (console handler, level from LOG_LEVEL)."""
    root = logging.getLogger()
    root.setLevel(level)

    if not root.handlers:
        console_handler = logging.StreamHandler()
        formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s - %(message)s')
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)


async def connect_with_backoff(
    consumer: NotificationConsumer,
    max_attempts: int,
    backoff_max: float,
    wait=None
) -> None:
    """
    Connect the consumer, retrying BrokerConnectionError with exponential backoff.

    Args:
        consumer: Consumer to connect
        max_attempts: Attempts before giving up (0 = retry forever)
        backoff_max: Upper bound (seconds) for the delay between attempts
        wait: tenacity wait strategy override (tests use wait_none())

    Raises:
        BrokerConnectionError: When every attempt failed
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts) if max_attempts else stop_never,
        wait=wait or wait_exponential(multiplier=1, min=1, max=backoff_max),
        retry=retry_if_exception_type(BrokerConnectionError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async for attempt in retrying:
        with attempt:
            await consumer.connect()


async def run_worker(
    config: WorkerConfig,
    stop_event: asyncio.Event,
    email_sender=None,
    connect: Callable[..., Awaitable[Any]] = aio_pika.connect_robust,
    wait=None
) -> int:
    """
    Run the worker until stop_event is set.

    Args:
        config: Validated worker configuration
        stop_event: Set to request a graceful shutdown
        email_sender: Sender override (defaults to the configured transport)
        connect: Broker connection factory
        wait: tenacity wait strategy override for the startup backoff

    Returns:
        int: Process exit code
    """
    logger.info("=" * 70)
    logger.info("Notification Worker - Starting")
    logger.info("=" * 70)

    sender = email_sender or create_email_sender(config)
    processor = NotificationProcessor(
        sender,
        config.sender_address,
        send_timeout=config.send_timeout,
        max_retries=config.max_retries
    )
    consumer = NotificationConsumer(config, processor, connect=connect)
    health = HealthServer(config.port, lambda: consumer.is_connected, config.environment)

    # The listener answers even while the broker is unreachable
    try:
        await health.start()
    except OSError as e:
        logger.error(f"Health listener failed to start on port {config.port}: {e}")
        await health.stop()
        return EXIT_LISTENER_ERROR

    async def start_consuming() -> None:
        await connect_with_backoff(
            consumer,
            config.connect_max_attempts,
            config.connect_backoff_max,
            wait=wait
        )
        await consumer.declare_queues()
        await consumer.start()

    startup = asyncio.create_task(start_consuming())
    stopper = asyncio.create_task(stop_event.wait())

    try:
        done, _ = await asyncio.wait({startup, stopper}, return_when=asyncio.FIRST_COMPLETED)

        if startup not in done:
            startup.cancel()
            await asyncio.gather(startup, return_exceptions=True)
            logger.info("Shutdown requested before the broker connection was established")
            return EXIT_OK

        try:
            startup.result()
        except BrokerConnectionError as e:
            logger.error(f"BrokerConnectionError: {e}. Giving up after startup retries.")
            return EXIT_CONNECTION_ERROR

        logger.info(f"Queue is up: consuming from {config.queue_name}")
        await stopper
        return EXIT_OK

    finally:
        stopper.cancel()
        logger.info("=" * 70)
        logger.info("Notification Worker - Shutting down")
        logger.info("=" * 70)
        try:
            await consumer.stop()
        finally:
            await consumer.close()
            await health.stop()


async def _serve(config: WorkerConfig) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass
    return await run_worker(config, stop_event)


def main(environ: Optional[dict] = None) -> int:
    """
    Console entry point.

    Args:
        environ: Environment mapping override (defaults to os.environ)

    Returns:
        int: Process exit code
    """
    configure_logging()

    try:
        config = load_config(environ)
    except ConfigError as e:
        logger.error(f"ConfigError: {e}")
        return EXIT_CONFIG_ERROR

    configure_logging(config.log_level)
    return asyncio.run(_serve(config))


if __name__ == '__main__':
    sys.exit(main())
