"""
Movement Consumer - drives broker deliveries into the movement processor

Ack/nack policy:
    malformed or invalid message  -> nack, no requeue
    business rule violation       -> nack, no requeue
    dependency unavailable        -> nack, requeue (redelivery is the broker's job)
    committed                     -> ack
"""
import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Set

from movement_ledger.core.config import Settings
from movement_ledger.core.exceptions import MovementLedgerError, ValidationError
from movement_ledger.integrations import RabbitBroker, StockApiClient
from movement_ledger.schemas.movement import MovementMessage
from movement_ledger.services import MovementProcessor, NotificationDispatcher, PayloadCipher

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, enum.Enum):
    ACKED = "acked"
    DROPPED = "dropped"
    REQUEUED = "requeued"


class MovementConsumer:
    """Consumes movement events with a bounded number of units in flight"""

    def __init__(
        self,
        processor: MovementProcessor,
        broker: Optional[RabbitBroker] = None,
        queue_name: str = "movement.generated",
        routing_keys: Iterable[str] = ("movement.generated",),
        prefetch_count: int = 5,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.processor = processor
        self.broker = broker
        self.queue_name = queue_name
        self.routing_keys = list(routing_keys)
        self.prefetch_count = prefetch_count
        self.notifier = notifier

        self.is_running = False
        self.processed_count: int = 0
        self.dropped_count: int = 0
        self.requeued_count: int = 0
        self.last_message_at: Optional[datetime] = None

        self._accepting = False
        self._semaphore = asyncio.Semaphore(prefetch_count)
        self._in_flight: Set[asyncio.Task] = set()
        self._queue = None
        self._consumer_tag: Optional[str] = None

    async def start(self):
        """Connect, declare topology and begin consuming"""
        if self.is_running:
            logger.warning("Movement consumer already running")
            return
        if self.broker is None:
            raise RuntimeError("Movement consumer has no broker")

        await self.broker.connect()
        self._queue = await self.broker.declare_queue(self.queue_name, self.routing_keys)
        self._accepting = True
        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
        self.is_running = True
        logger.info(f"[OK] Waiting for messages on queue '{self.queue_name}' (prefetch={self.prefetch_count})")

    async def stop(self):
        """Stop new deliveries, let in-flight units finish, then release the broker"""
        self._accepting = False

        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except Exception as e:
                logger.warning(f"Could not cancel consumer cleanly: {e}")
            self._consumer_tag = None

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight movements")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        if self.notifier is not None:
            await self.notifier.drain()

        if self.broker is not None:
            await self.broker.close()

        self.is_running = False
        logger.info("Movement consumer stopped")

    async def _on_message(self, message):
        if not self._accepting:
            # Arrived after shutdown began: hand it back untouched
            await self._settle(message, DeliveryOutcome.REQUEUED)
            return
        task = asyncio.create_task(self.handle_message(message))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def handle_message(self, message) -> DeliveryOutcome:
        """Process one delivery and settle it exactly once"""
        async with self._semaphore:
            self.last_message_at = datetime.now(timezone.utc)
            outcome = await self._process(message)
            await self._settle(message, outcome)
            return outcome

    async def _process(self, message) -> DeliveryOutcome:
        try:
            event = MovementMessage.from_body(message.body)
        except ValidationError as e:
            logger.error(f"[DROP] Unparseable message discarded: {e.message} {e.details or ''}")
            return DeliveryOutcome.DROPPED

        key = event.natural_key(getattr(message, "message_id", None))
        try:
            await self.processor.process(event, idempotency_key=key)
        except MovementLedgerError as e:
            if e.retryable:
                logger.warning(f"[RETRY] Movement {key} requeued: {e.message}")
                return DeliveryOutcome.REQUEUED
            logger.error(f"[DROP] Movement {key} rejected ({e.code}): {e.message}")
            return DeliveryOutcome.DROPPED
        except Exception:
            logger.exception(f"[RETRY] Unexpected error processing movement {key}")
            return DeliveryOutcome.REQUEUED

        return DeliveryOutcome.ACKED

    async def _settle(self, message, outcome: DeliveryOutcome):
        try:
            if outcome == DeliveryOutcome.ACKED:
                await message.ack()
                self.processed_count += 1
            elif outcome == DeliveryOutcome.REQUEUED:
                await message.nack(requeue=True)
                self.requeued_count += 1
            else:
                await message.nack(requeue=False)
                self.dropped_count += 1
        except Exception as e:
            logger.error(f"Could not settle delivery as {outcome.value}; the broker will redeliver: {e}")

    def get_status(self) -> Dict:
        """Get consumer status"""
        return {
            "is_running": self.is_running,
            "connected": bool(self.broker and self.broker.is_connected),
            "queue": self.queue_name,
            "prefetch_count": self.prefetch_count,
            "in_flight": len(self._in_flight),
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "total_processed": self.processed_count,
            "total_dropped": self.dropped_count,
            "total_requeued": self.requeued_count,
        }


def build_consumer(settings: Settings) -> MovementConsumer:
    """Wire broker, stock client, cipher and notifier from settings"""
    broker = RabbitBroker(
        url=settings.RABBIT_URL,
        exchange_name=settings.RABBIT_EXCHANGE,
        prefetch_count=settings.RABBIT_PREFETCH_COUNT,
    )
    notifier = NotificationDispatcher(
        publisher=broker.publish,
        routing_key=settings.NOTIFICATION_ROUTING_KEY,
        timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
    )
    processor = MovementProcessor(
        stock_client=StockApiClient(
            base_url=settings.STOCK_API_URL,
            api_key=settings.STOCK_API_KEY,
            timeout=settings.STOCK_API_TIMEOUT_SECONDS,
        ),
        cipher=PayloadCipher.from_base64(settings.ENCRYPTION_KEY),
        notifier=notifier,
        low_stock_threshold=settings.LOW_STOCK_THRESHOLD,
    )
    return MovementConsumer(
        processor=processor,
        broker=broker,
        queue_name=settings.RABBIT_QUEUE,
        routing_keys=settings.RABBIT_ROUTING_KEYS,
        prefetch_count=settings.RABBIT_PREFETCH_COUNT,
        notifier=notifier,
    )


# Singleton instance
_consumer: Optional[MovementConsumer] = None


def get_consumer() -> Optional[MovementConsumer]:
    """Get the running consumer, if one was started"""
    return _consumer


async def start_movement_consumer(settings: Settings) -> MovementConsumer:
    """Build and start the process-wide consumer"""
    global _consumer
    if _consumer is None:
        _consumer = build_consumer(settings)
    await _consumer.start()
    return _consumer


async def stop_movement_consumer():
    """Stop the process-wide consumer"""
    global _consumer
    if _consumer is not None:
        await _consumer.stop()
        _consumer = None
