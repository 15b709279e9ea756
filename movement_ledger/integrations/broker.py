"""
RabbitMQ Broker - connection, topology and publishing over aio-pika
"""
from typing import Iterable, Optional
import logging

import aio_pika

logger = logging.getLogger(__name__)


class RabbitBroker:
    """
    Owns one robust connection and one channel shared by the consumer and the
    notification publisher. Acknowledgements stay scoped to each delivery.
    """

    def __init__(self, url: str, exchange_name: str, prefetch_count: int = 5):
        self.url = url
        self.exchange_name = exchange_name
        self.prefetch_count = prefetch_count
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._channel: Optional[aio_pika.abc.AbstractChannel] = None
        self._exchange: Optional[aio_pika.abc.AbstractExchange] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self):
        """Open the connection, set QoS and declare the topic exchange"""
        if self.is_connected:
            return
        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self.exchange_name,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )
        logger.info(f"[OK] Connected to RabbitMQ (exchange={self.exchange_name}, prefetch={self.prefetch_count})")

    async def declare_queue(self, queue_name: str, routing_keys: Iterable[str]) -> aio_pika.abc.AbstractQueue:
        """Declare a durable queue bound to the exchange for every routing key"""
        if self._channel is None:
            raise RuntimeError("Broker is not connected")
        queue = await self._channel.declare_queue(queue_name, durable=True)
        for routing_key in routing_keys:
            await queue.bind(self._exchange, routing_key=routing_key)
            logger.info(f"Queue '{queue_name}' bound to '{self.exchange_name}' with '{routing_key}'")
        return queue

    async def publish(self, routing_key: str, body: bytes, message_id: Optional[str] = None):
        if self._exchange is None:
            raise RuntimeError("Broker is not connected")
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message_id,
        )
        await self._exchange.publish(message, routing_key=routing_key)

    async def close(self):
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._exchange = None
        self._connection = None
        logger.info("RabbitMQ connection closed")
