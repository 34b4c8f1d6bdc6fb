import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika
from tenacity import before_sleep_log, retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"
FULFILLMENT_QUEUE = "fulfillment_q"
PAYMENT_CONFIRMED = "payment.confirmed"
PAYMENT_FAILED = "payment.failed"

connection = None
channel = None


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def connect(rabbitmq_url: str):
    return await aio_pika.connect_robust(rabbitmq_url)


async def setup_rabbitmq(rabbitmq_url: str):
    global connection, channel
    connection = await connect(rabbitmq_url)
    channel = await connection.channel()
    await channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
    logger.info("RabbitMQ setup complete.")
    return channel


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


def build_event(event_type: str, **fields) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **fields,
    }


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if channel is None:
        raise RuntimeError("RabbitMQ channel not available. Call setup_rabbitmq() first.")

    message = aio_pika.Message(
        json.dumps(message_data).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        message_id=message_data.get("event_id"),
    )
    exchange = await channel.get_exchange(exchange_name)
    await exchange.publish(message, routing_key=routing_key)
    logger.info("Published event to %s: %s", routing_key, message_data["event_type"])
