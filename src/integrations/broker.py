"""
AMQP queue consumer for notification messages.

This module owns the single broker connection and channel used by the
worker. It declares the work, retry and dead-letter queues, hands each
delivery to the NotificationProcessor and settles the message according
to the returned disposition.

Ack policy:
    ack          -> message.ack()
    retry        -> copy published to the retry queue (with a per-message
                    expiration and incremented x-retry-count), then ack
    dead_letter  -> copy published to the dead-letter queue, then ack
    publish fail -> message.nack(requeue=True), never silently dropped

Usage:
    async with NotificationConsumer(config, processor) as consumer:
        await stop_event.wait()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aio_pika
from aio_pika.exceptions import AMQPException

from domain.errors import BrokerConnectionError
from domain.models import Disposition, ProcessingResult

logger = logging.getLogger(__name__)

RETRY_COUNT_HEADER = 'x-retry-count'
FAILURE_REASON_HEADER = 'x-failure-reason'
ORIGINAL_QUEUE_HEADER = 'x-original-queue'

MAX_REASON_LENGTH = 1000
CONNECT_TIMEOUT = 10

# Sentinel that tells the worker coroutine to exit
_STOP = object()


def retry_count_from_headers(headers: Optional[Dict[str, Any]]) -> int:
    """
    Read the retry counter carried in message headers.

    Args:
        headers: AMQP message headers (may be None)

    Returns:
        int: Retries already made (0 when absent or unreadable)
    """
    if not headers:
        return 0

    value = headers.get(RETRY_COUNT_HEADER, 0)
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='ignore')
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unreadable {RETRY_COUNT_HEADER} header: {value!r}")
        return 0


def delivery_channel_closed(message) -> bool:
    """True when the channel a delivery arrived on can no longer settle it."""
    channel = getattr(message, 'channel', None)
    return bool(channel is not None and channel.is_closed)


class NotificationConsumer:
    """
    Consumes notification messages from one durable queue.

    The connection and channel are acquired once by connect() and released
    exactly once by close(). Deliveries are buffered in FIFO order and
    handled by a single worker coroutine, so acks always follow delivery
    order whatever the prefetch count.
    """

    def __init__(
        self,
        config,
        processor,
        connect: Callable[..., Awaitable[Any]] = aio_pika.connect_robust
    ):
        """
        Initialize queue consumer.

        Args:
            config: WorkerConfig (broker URL, queue names, prefetch, retry policy)
            processor: NotificationProcessor deciding each message's disposition
            connect: Connection factory (aio_pika.connect_robust by default)
        """
        self._config = config
        self._processor = processor
        self._connect = connect

        self._connection = None
        self._channel = None
        self._queue = None
        self._consumer_tag: Optional[str] = None
        self._pending: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        """True while the connection is open and the consumer is registered."""
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._consumer_tag is not None
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the broker connection and a channel with the configured prefetch.

        Raises:
            BrokerConnectionError: If the broker is unreachable, rejects the
                credentials, or the channel cannot be opened
        """
        if self._connection is not None:
            return

        logger.info(f"Connecting to broker (prefetch={self._config.prefetch_count})")

        try:
            connection = await self._connect(self._config.broker_url, timeout=CONNECT_TIMEOUT)
        except (AMQPException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Broker connection failed: {type(e).__name__}: {e}")
            raise BrokerConnectionError(f"Broker connection failed: {e}") from e

        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._config.prefetch_count)
        except (AMQPException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Opening broker channel failed: {type(e).__name__}: {e}")
            await connection.close()
            raise BrokerConnectionError(f"Opening broker channel failed: {e}") from e

        self._connection = connection
        self._channel = channel
        logger.info("Broker connection established")

    async def declare_queues(self) -> None:
        """
        Declare the work, retry and dead-letter queues (idempotent).

        The work queue is declared durable with no extra arguments so it
        matches queues already declared by producers.

        Raises:
            BrokerConnectionError: If a declaration is refused by the broker
        """
        config = self._config

        try:
            self._queue = await self._channel.declare_queue(config.queue_name, durable=True)
            await self._channel.declare_queue(config.dead_letter_queue, durable=True)
            await self._channel.declare_queue(
                config.retry_queue,
                durable=True,
                arguments={
                    'x-dead-letter-exchange': '',
                    'x-dead-letter-routing-key': config.queue_name,
                }
            )
        except AMQPException as e:
            logger.error(f"Queue declaration failed: {type(e).__name__}: {e}")
            raise BrokerConnectionError(f"Queue declaration failed: {e}") from e

        logger.info(
            f"Queues declared: work={config.queue_name}, "
            f"retry={config.retry_queue}, dead_letter={config.dead_letter_queue}"
        )

    async def start(self) -> None:
        """Start the worker coroutine and register the broker consumer."""
        if self._queue is None:
            await self.declare_queues()

        self._stopping = False
        self._worker_task = asyncio.create_task(self._drain())
        self._consumer_tag = await self._queue.consume(self._on_message)
        logger.info(f"Consuming from {self._config.queue_name} (consumer_tag={self._consumer_tag})")

    async def stop(self) -> None:
        """
        Stop accepting messages and let the in-flight message finish.

        Buffered deliveries that were not started are returned to the
        broker. The in-flight message gets shutdown_timeout seconds before
        its task is cancelled (the broker redelivers it).
        """
        if self._stopping:
            return
        self._stopping = True

        if self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except AMQPException as e:
                logger.warning(f"Cancelling consumer failed: {e}")
            self._consumer_tag = None

        await self._requeue_buffered()

        if self._worker_task is None:
            return

        self._pending.put_nowait(_STOP)
        try:
            await asyncio.wait_for(self._worker_task, timeout=self._config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"In-flight message did not finish within {self._config.shutdown_timeout}s, cancelling"
            )
        self._worker_task = None
        logger.info("Consumer stopped")

    async def close(self) -> None:
        """Close the channel and the connection (once, on every exit path)."""
        if self._closed:
            return
        self._closed = True

        if self._channel is not None and not self._channel.is_closed:
            try:
                await self._channel.close()
            except AMQPException as e:
                logger.warning(f"Closing channel failed: {e}")

        if self._connection is not None and not self._connection.is_closed:
            try:
                await self._connection.close()
            except AMQPException as e:
                logger.warning(f"Closing connection failed: {e}")

        logger.info("Broker connection closed")

    async def __aenter__(self) -> 'NotificationConsumer':
        try:
            await self.connect()
            await self.declare_queues()
            await self.start()
        except BaseException:
            await self.stop()
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.stop()
        finally:
            await self.close()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def _on_message(self, message) -> None:
        # Must not suspend: buffer order is delivery order
        if self._stopping:
            await message.nack(requeue=True)
            return
        self._pending.put_nowait(message)

    async def _drain(self) -> None:
        while True:
            message = await self._pending.get()
            if message is _STOP:
                return
            try:
                await self.handle_message(message)
            except Exception as e:
                logger.error(f"Unhandled error while handling message: {e}", exc_info=True)

    async def _requeue_buffered(self) -> None:
        while not self._pending.empty():
            message = self._pending.get_nowait()
            if message is _STOP:
                continue
            try:
                await message.nack(requeue=True)
            except AMQPException as e:
                logger.warning(f"Returning buffered message to broker failed: {e}")

    async def handle_message(self, message) -> ProcessingResult:
        """
        Process one delivery and settle it exactly once.

        Args:
            message: aio_pika IncomingMessage

        Returns:
            ProcessingResult from the processor
        """
        message_id = message.message_id or f"delivery-{message.delivery_tag}"
        retry_count = retry_count_from_headers(message.headers)

        result = await self._processor.process(message.body, message_id, retry_count)
        await self._settle(message, result)
        return result

    async def _settle(self, message, result: ProcessingResult) -> None:
        if delivery_channel_closed(message):
            # The delivery tag died with its channel; the broker redelivers the
            # original, so publishing a retry or dead-letter copy would duplicate it
            logger.warning(
                f"Channel of {result.message_id} closed before settlement "
                f"({result.disposition.value}); leaving it for redelivery"
            )
            return

        try:
            if result.disposition is Disposition.ACK:
                await message.ack()
                logger.info(f"✓ Delivered and acknowledged {result.message_id}")
            elif result.disposition is Disposition.RETRY:
                delay = self.retry_delay(result.retry_count)
                await self._publish_copy(
                    message,
                    self._config.retry_queue,
                    {RETRY_COUNT_HEADER: result.retry_count + 1},
                    expiration=delay
                )
                await message.ack()
                logger.warning(
                    f"⚠ Retry {result.retry_count + 1}/{self._config.max_retries} "
                    f"scheduled in {delay:.0f}s: {result.to_log_dict()}"
                )
            else:
                await self._publish_copy(
                    message,
                    self._config.dead_letter_queue,
                    {
                        RETRY_COUNT_HEADER: result.retry_count,
                        FAILURE_REASON_HEADER: (result.error_message or '')[:MAX_REASON_LENGTH],
                        ORIGINAL_QUEUE_HEADER: self._config.queue_name,
                    }
                )
                await message.ack()
                logger.error(f"✗ Dead-lettered: {result.to_log_dict()}")
        except Exception as e:
            logger.error(
                f"Settling {result.message_id} failed ({type(e).__name__}: {e}), "
                f"returning it to the queue"
            )
            try:
                await message.nack(requeue=True)
            except Exception as nack_error:
                # Channel is gone; the broker requeues unacked messages itself
                logger.error(f"Nack of {result.message_id} failed: {nack_error}")

    def retry_delay(self, retry_count: int) -> float:
        """
        Exponential delay before the next retry.

        Args:
            retry_count: Retries already made

        Returns:
            float: min(retry_delay * 2 ** retry_count, retry_delay_max) seconds
        """
        return min(self._config.retry_delay * (2 ** retry_count), self._config.retry_delay_max)

    async def _publish_copy(
        self,
        message,
        routing_key: str,
        headers: Dict[str, Any],
        expiration: Optional[float] = None
    ) -> None:
        copy = aio_pika.Message(
            body=message.body,
            headers={**(message.headers or {}), **headers},
            content_type=message.content_type,
            message_id=message.message_id,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            expiration=expiration
        )
        await self._channel.default_exchange.publish(copy, routing_key=routing_key)
