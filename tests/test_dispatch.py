import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from checkout import messaging
from checkout.dispatch import InlineDispatcher, QueueDispatcher
from checkout.fulfillment import FulfillmentOrchestrator
from checkout.invoice import InvoiceRenderer
from checkout.models import PaymentState
from checkout.store import CallbackOutcome


@pytest.mark.asyncio
async def test_queue_dispatcher_publishes_payment_confirmed():
    with patch("checkout.dispatch.messaging.publish_event", new=AsyncMock()) as mock_publish_event:
        await QueueDispatcher().payment_confirmed("ws_CO_X1")

    mock_publish_event.assert_called_once()
    args, _ = mock_publish_event.call_args
    assert args[0] == "payment_exchange"
    assert args[1] == "payment.confirmed"
    assert args[2]["event_type"] == "PaymentConfirmed"
    assert args[2]["correlation_key"] == "ws_CO_X1"


@pytest.mark.asyncio
async def test_queue_dispatcher_publishes_payment_failed():
    outcome = CallbackOutcome(
        correlation_key="ws_CO_X1", state=PaymentState.FAILED, result_code="1032", result_desc="Request cancelled by user"
    )
    with patch("checkout.dispatch.messaging.publish_event", new=AsyncMock()) as mock_publish_event:
        await QueueDispatcher().payment_failed(outcome)

    args, _ = mock_publish_event.call_args
    assert args[1] == "payment.failed"
    assert args[2]["reason"] == "Request cancelled by user"


@pytest.mark.asyncio
async def test_publish_without_channel_raises():
    with patch.object(messaging, "channel", None):
        with pytest.raises(RuntimeError):
            await messaging.publish_event("payment_exchange", "payment.confirmed", {"event_type": "PaymentConfirmed"})


@pytest.mark.asyncio
async def test_publish_event_sends_persistent_json_message():
    exchange = AsyncMock()
    channel = MagicMock()
    channel.get_exchange = AsyncMock(return_value=exchange)
    event = messaging.build_event("PaymentConfirmed", correlation_key="ws_CO_X1")

    with patch.object(messaging, "channel", channel):
        await messaging.publish_event("payment_exchange", "payment.confirmed", event)

    message = exchange.publish.call_args.args[0]
    assert json.loads(message.body) == event
    assert exchange.publish.call_args.kwargs["routing_key"] == "payment.confirmed"


@pytest.mark.asyncio
async def test_inline_dispatcher_runs_fulfillment_in_background(store, make_callback, channel_factory):
    from checkout.callbacks import CallbackIngestor

    email = channel_factory("email")
    orchestrator = FulfillmentOrchestrator([email], InvoiceRenderer("Shop"), "Shop")
    dispatcher = InlineDispatcher(store, orchestrator)

    await CallbackIngestor(store, dispatcher).ingest(make_callback())
    await dispatcher.drain()

    assert len(email.sent) == 2
