import asyncio
import logging

from checkout import messaging
from checkout.fulfillment import FulfillmentOrchestrator, fulfill_confirmed_payment
from checkout.store import CallbackOutcome, CorrelationStore

logger = logging.getLogger(__name__)


class InlineDispatcher:
    """Runs fulfillment as a background task in this process.

    The callback is acknowledged without waiting for the task.
    """

    def __init__(self, store: CorrelationStore, orchestrator: FulfillmentOrchestrator):
        self.store = store
        self.orchestrator = orchestrator
        self._tasks = set()

    async def payment_confirmed(self, correlation_key: str):
        task = asyncio.create_task(
            fulfill_confirmed_payment(self.store, self.orchestrator, correlation_key),
            name=f"fulfill-{correlation_key}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    async def payment_failed(self, outcome: CallbackOutcome):
        logger.info("Payment %s failed: %s", outcome.correlation_key, outcome.result_desc)

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Fulfillment task %s crashed", task.get_name(), exc_info=task.exception())

    async def drain(self):
        """Wait for every in-flight fulfillment task."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class QueueDispatcher:
    """Publishes payment events for the fulfillment consumer."""

    async def payment_confirmed(self, correlation_key: str):
        await messaging.publish_event(
            messaging.PAYMENT_EXCHANGE,
            messaging.PAYMENT_CONFIRMED,
            messaging.build_event("PaymentConfirmed", correlation_key=correlation_key),
        )

    async def payment_failed(self, outcome: CallbackOutcome):
        await messaging.publish_event(
            messaging.PAYMENT_EXCHANGE,
            messaging.PAYMENT_FAILED,
            messaging.build_event(
                "PaymentFailed",
                correlation_key=outcome.correlation_key,
                result_code=outcome.result_code,
                reason=outcome.result_desc,
            ),
        )

    async def drain(self):
        pass
