import asyncio
import json
import logging

import aio_pika

from checkout import database, messaging
from checkout.config import Settings, configure_logging
from checkout.fulfillment import build_orchestrator, fulfill_confirmed_payment
from checkout.store import CorrelationStore

logger = logging.getLogger(__name__)

store = None
orchestrator = None


async def process_payment_confirmed(message: aio_pika.IncomingMessage):
    # The fulfilled flag was claimed before this event was published, so the
    # message is acked even when fulfillment fails; notifications are not retried.
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
            correlation_key = event_data["correlation_key"]
            logger.info("Fulfillment consumer received %s for %s", event_data.get("event_type"), correlation_key)

            report = await fulfill_confirmed_payment(store, orchestrator, correlation_key)
            if report is not None and report.failed_channels:
                logger.warning("Channels failed for %s: %s", correlation_key, ", ".join(report.failed_channels))
        except Exception:
            logger.exception("Error processing PaymentConfirmed event")


async def start_consumer(settings: Settings):
    global store, orchestrator
    database.configure_database(settings.database_url)
    await database.init_db()
    store = CorrelationStore(database.SessionLocal)
    orchestrator = build_orchestrator(settings)

    channel = await messaging.setup_rabbitmq(settings.rabbitmq_url)
    payment_exchange = await channel.declare_exchange(
        messaging.PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True
    )
    queue = await channel.declare_queue(messaging.FULFILLMENT_QUEUE, durable=True)
    await queue.bind(payment_exchange, messaging.PAYMENT_CONFIRMED)

    logger.info("Fulfillment consumer is listening for events...")
    await queue.consume(process_payment_confirmed)

    try:
        # Keep the main task running
        await asyncio.Future()
    finally:
        await orchestrator.aclose()
        await messaging.close_rabbitmq()
        await database.dispose_db()


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    try:
        asyncio.run(start_consumer(settings))
    except KeyboardInterrupt:
        logger.info("Fulfillment consumer stopped.")


if __name__ == "__main__":
    main()
