import base64
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from checkout.config import EmailSettings, WhatsAppSettings
from checkout.errors import ChannelDeliveryError, InvalidPhoneNumber
from checkout.phone import normalize_phone
from checkout.schemas import Order

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
WHATSAPP_URL = "https://graph.facebook.com/v17.0/{phone_id}/messages"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class Message:
    subject: str
    text: str
    html: Optional[str] = None


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


class NotificationChannel:
    """A best-effort delivery channel.

    ``send`` either returns normally or raises ChannelDeliveryError; it
    never lets transport exceptions escape.
    """

    name = "channel"

    def customer_recipient(self, order: Order) -> Optional[str]:
        raise NotImplementedError

    def owner_recipient(self) -> Optional[str]:
        raise NotImplementedError

    async def send(self, recipient: str, message: Message, attachment: Optional[Attachment] = None):
        raise NotImplementedError

    async def aclose(self):
        await self._http.aclose()

    async def _post(self, recipient: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.post(url, timeout=DEFAULT_TIMEOUT, **kwargs)
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(self.name, recipient, repr(e)) from e
        if response.status_code >= 400:
            raise ChannelDeliveryError(
                self.name, recipient, f"HTTP {response.status_code}: {response.text[:200]}"
            )
        return response


class EmailChannel(NotificationChannel):
    """Transactional email through the SendGrid v3 REST API."""

    name = "email"

    def __init__(self, settings: EmailSettings, brand_name: str, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.brand_name = brand_name
        self._http = http_client or httpx.AsyncClient()

    def customer_recipient(self, order: Order) -> Optional[str]:
        return order.customer.email or None

    def owner_recipient(self) -> Optional[str]:
        return self.settings.owner_email

    async def send(self, recipient: str, message: Message, attachment: Optional[Attachment] = None):
        body = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.settings.sender, "name": self.brand_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html or message.text},
            ],
        }
        if attachment is not None:
            body["attachments"] = [
                {
                    "content": base64.b64encode(attachment.content).decode(),
                    "filename": attachment.filename,
                    "type": attachment.content_type,
                    "disposition": "attachment",
                }
            ]
        await self._post(
            recipient,
            SENDGRID_URL,
            json=body,
            headers={"Authorization": f"Bearer {self.settings.api_key}"},
        )
        logger.info("Email '%s' sent to %s", message.subject, recipient)


class WhatsAppChannel(NotificationChannel):
    """Text messages through the WhatsApp Cloud API. Attachments are not sent."""

    name = "whatsapp"

    def __init__(self, settings: WhatsAppSettings, country_code: str = "254", http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.country_code = country_code
        self._http = http_client or httpx.AsyncClient()

    def customer_recipient(self, order: Order) -> Optional[str]:
        if not order.customer.phone:
            return None
        try:
            return normalize_phone(order.customer.phone, self.country_code)
        except InvalidPhoneNumber:
            logger.warning("Customer phone %r is not a valid WhatsApp number", order.customer.phone)
            return None

    def owner_recipient(self) -> Optional[str]:
        return self.settings.owner_phone

    async def send(self, recipient: str, message: Message, attachment: Optional[Attachment] = None):
        await self._post(
            recipient,
            WHATSAPP_URL.format(phone_id=self.settings.phone_id),
            json={
                "messaging_product": "whatsapp",
                "to": recipient,
                "type": "text",
                "text": {"body": message.text},
            },
            headers={"Authorization": f"Bearer {self.settings.token}"},
        )
        logger.info("WhatsApp message sent to %s", recipient)
