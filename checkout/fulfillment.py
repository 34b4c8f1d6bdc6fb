import asyncio
import html
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from checkout.channels import Attachment, EmailChannel, Message, NotificationChannel, WhatsAppChannel
from checkout.errors import ChannelDeliveryError, InvoiceRenderError
from checkout.invoice import InvoiceRenderer, money
from checkout.models import PaymentRequest, PaymentStatus
from checkout.schemas import Customer, Order
from checkout.store import CorrelationStore

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class DeliveryOutcome:
    channel: str
    audience: str  # "customer" or "owner"
    recipient: Optional[str]
    status: str
    error: Optional[str] = None


@dataclass
class FulfillmentReport:
    """Per-channel outcome of one fulfillment run. Observability only."""

    correlation_key: str
    order_id: str
    invoice_rendered: bool = False
    invoice_error: Optional[str] = None
    deliveries: List[DeliveryOutcome] = field(default_factory=list)

    def channel_results(self) -> Dict[str, bool]:
        """Map each channel to True when none of its deliveries failed."""
        results: Dict[str, bool] = {}
        for outcome in self.deliveries:
            ok = outcome.status != FAILED
            results[outcome.channel] = results.get(outcome.channel, True) and ok
        return results

    @property
    def succeeded_channels(self) -> List[str]:
        return [name for name, ok in self.channel_results().items() if ok]

    @property
    def failed_channels(self) -> List[str]:
        return [name for name, ok in self.channel_results().items() if not ok]

    def summary(self) -> str:
        counts = {SENT: 0, FAILED: 0, SKIPPED: 0}
        for outcome in self.deliveries:
            counts[outcome.status] += 1
        invoice = "ok" if self.invoice_rendered else f"failed ({self.invoice_error})"
        return (
            f"order {self.order_id}: invoice {invoice}, "
            f"{counts[SENT]} sent, {counts[FAILED]} failed, {counts[SKIPPED]} skipped"
        )


def compose_messages(order: Order, status: PaymentStatus, brand_name: str):
    """Build the (customer, owner) message pair for a paid order.

    The owner message carries the customer's contact details; the customer
    message does not.
    """
    customer = order.customer
    name = customer.name or "there"
    total = money(order.total)
    receipt = status.receipt_number or "n/a"

    customer_text = (
        f"Hi {name}! Your payment for order {order.order_id} has been received. "
        f"Total: {total}. M-Pesa receipt: {receipt}. "
        f"Your invoice has been emailed to you. Thank you for shopping with {brand_name}."
    )
    customer_html = (
        f"<div style=\"font-family: Arial, Helvetica, sans-serif;\">"
        f"<h2>Thank you for your order - {html.escape(brand_name)}</h2>"
        f"<p>Hello {html.escape(name)},</p>"
        f"<p>We have received payment for order <strong>{html.escape(order.order_id)}</strong>. "
        f"Your invoice is attached.</p>"
        f"<p>Order total: <strong>{total}</strong><br/>M-Pesa receipt: {html.escape(receipt)}</p>"
        f"<p>With warm regards,<br/>{html.escape(brand_name)}</p></div>"
    )

    items = ", ".join(f"{item.name} x{item.quantity}" for item in order.items) or "none listed"
    owner_text = (
        f"New paid order {order.order_id} - {total} (receipt {receipt}).\n"
        f"Customer: {customer.name or 'unknown'}, {customer.phone or 'no phone'}, "
        f"{customer.email or 'no email'}\n"
        f"Address: {customer.address or 'not given'}\n"
        f"Items: {items}"
    )
    owner_html = "<p>" + html.escape(owner_text).replace("\n", "<br/>") + "</p>"

    return (
        Message(subject=f"{brand_name} - Your Order {order.order_id}", text=customer_text, html=customer_html),
        Message(subject=f"New order received - {order.order_id}", text=owner_text, html=owner_html),
    )


class FulfillmentOrchestrator:
    def __init__(self, channels: Sequence[NotificationChannel], renderer: InvoiceRenderer, brand_name: str):
        self.channels = list(channels)
        self.renderer = renderer
        self.brand_name = brand_name

    async def fulfill(self, correlation_key: str, order: Order, payment_status: PaymentStatus) -> FulfillmentReport:
        report = FulfillmentReport(correlation_key=correlation_key, order_id=order.order_id)

        attachment = None
        try:
            document = await asyncio.to_thread(
                self.renderer.render,
                order,
                payment_status.amount,
                payment_status.receipt_number,
            )
            attachment = Attachment(filename=f"invoice-{order.order_id}.pdf", content=document)
            report.invoice_rendered = True
        except InvoiceRenderError as e:
            logger.error("Invoice for %s not rendered, sending without attachment: %s", correlation_key, e)
            report.invoice_error = str(e)

        customer_message, owner_message = compose_messages(order, payment_status, self.brand_name)

        deliveries = []
        for channel in self.channels:
            deliveries.append(
                self._deliver(channel, "customer", channel.customer_recipient(order), customer_message, attachment)
            )
            deliveries.append(
                self._deliver(channel, "owner", channel.owner_recipient(), owner_message, attachment)
            )
        report.deliveries = list(await asyncio.gather(*deliveries))

        logger.info("Fulfillment for %s done: %s", correlation_key, report.summary())
        return report

    async def _deliver(self, channel, audience, recipient, message, attachment) -> DeliveryOutcome:
        if not recipient:
            return DeliveryOutcome(channel.name, audience, None, SKIPPED, "no recipient")
        try:
            await channel.send(recipient, message, attachment)
        except ChannelDeliveryError as e:
            logger.warning("%s", e)
            return DeliveryOutcome(channel.name, audience, recipient, FAILED, e.reason)
        except Exception as e:
            logger.exception("Unexpected %s failure delivering to %s", channel.name, recipient)
            return DeliveryOutcome(channel.name, audience, recipient, FAILED, repr(e))
        return DeliveryOutcome(channel.name, audience, recipient, SENT)

    async def aclose(self):
        for channel in self.channels:
            await channel.aclose()


def order_for(request: Optional[PaymentRequest], status: PaymentStatus) -> Order:
    """The order to fulfil for a paid key.

    Falls back to a minimal order built from the request, or from the
    callback itself when the key was never recorded at initiation.
    """
    if request is not None and request.order:
        return Order.model_validate(request.order)
    if request is not None:
        return Order(
            order_id=request.account_reference,
            customer=Customer(phone=request.phone),
            total=request.amount,
        )
    return Order(
        order_id=status.receipt_number or status.correlation_key,
        customer=Customer(phone=status.payer_phone),
        total=status.amount or 0,
    )


async def fulfill_confirmed_payment(
    store: CorrelationStore, orchestrator: FulfillmentOrchestrator, correlation_key: str
) -> Optional[FulfillmentReport]:
    status = await store.get_status(correlation_key)
    if status is None or not status.fulfilled:
        logger.error("Fulfillment requested for %s without a claimed paid status", correlation_key)
        return None
    request = await store.get_request(correlation_key)
    order = order_for(request, status)
    return await orchestrator.fulfill(correlation_key, order, status)


def build_orchestrator(settings) -> FulfillmentOrchestrator:
    channels = []
    if settings.email is not None:
        channels.append(EmailChannel(settings.email, settings.brand_name))
    if settings.whatsapp is not None:
        channels.append(WhatsAppChannel(settings.whatsapp, settings.country_code))
    return FulfillmentOrchestrator(channels, InvoiceRenderer(settings.brand_name), settings.brand_name)
