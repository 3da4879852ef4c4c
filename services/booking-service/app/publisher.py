import logging

import aio_pika

from shared.config import RABBIT_URL, EXCHANGE_NAME

logger = logging.getLogger(__name__)


class RabbitPublisher:
    """
    Publishes booking domain events. Without a RABBIT_URL it is disabled and
    publishing is a no-op; a broker outage never fails a booking transition.
    """

    def __init__(self, url: str | None = RABBIT_URL, exchange_name: str = EXCHANGE_NAME):
        self.url = url
        self.exchange_name = exchange_name
        self.enabled = bool(url)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            logger.warning("RabbitMQ connect failed: %s", e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.warning("RabbitMQ publish of %s failed: %s", routing_key, e)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
