import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from checkout.config import GatewaySettings
from checkout.errors import GatewayAuthError, GatewayRejected
from checkout.models import PaymentRequest
from checkout.phone import normalize_phone
from checkout.store import CorrelationStore

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# The gateway validates the password timestamp against East Africa Time.
GATEWAY_TZ = timezone(timedelta(hours=3), "EAT")
# Refresh the access token this many seconds before the gateway expires it.
TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class InitiateResult:
    correlation_key: str
    merchant_request_id: str
    customer_message: Optional[str] = None


def gateway_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(GATEWAY_TZ)
    return now.astimezone(GATEWAY_TZ).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaClient:
    """Lipa-na-M-Pesa Online (STK push) client.

    Each call is a single attempt. A submission that fails or times out is
    reported as :class:`GatewayRejected` and never retried, since a second
    push could charge the customer twice.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        store: CorrelationStore,
        http_client: Optional[httpx.AsyncClient] = None,
        country_code: str = "254",
    ):
        self.settings = settings
        self.store = store
        self.country_code = country_code
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.base_url, timeout=settings.timeout_seconds
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def aclose(self):
        await self._http.aclose()

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            try:
                response = await self._http.get(
                    self.settings.base_url + TOKEN_PATH,
                    auth=(self.settings.consumer_key, self.settings.consumer_secret),
                    timeout=self.settings.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                raise GatewayAuthError(f"Credential exchange timed out: {e!r}") from e
            except httpx.HTTPError as e:
                raise GatewayAuthError(f"Credential exchange failed: {e!r}") from e

            if response.status_code != 200:
                raise GatewayAuthError(
                    f"Credential exchange returned HTTP {response.status_code}: {response.text[:200]}"
                )
            try:
                data = response.json()
                token = data["access_token"]
            except (ValueError, KeyError, TypeError) as e:
                raise GatewayAuthError("Credential exchange returned no access_token") from e

            try:
                expires_in = int(data.get("expires_in", 0))
            except (TypeError, ValueError):
                expires_in = 0
            # Without a stated lifetime the token is used for this call only.
            self._token = token if expires_in > TOKEN_EXPIRY_MARGIN else None
            self._token_expires_at = time.monotonic() + expires_in - TOKEN_EXPIRY_MARGIN
            return token

    async def initiate(
        self,
        phone: str,
        amount: int,
        account_reference: str,
        callback_url: Optional[str] = None,
        transaction_desc: str = "Order payment",
        order: Optional[dict] = None,
    ) -> InitiateResult:
        """Send an STK push and record the resulting PaymentRequest.

        Raises ``InvalidPhoneNumber`` before any network call when ``phone``
        cannot be normalized.
        """
        msisdn = normalize_phone(phone, self.country_code)
        access_token = await self.get_access_token()

        timestamp = gateway_timestamp()
        payload = {
            "BusinessShortCode": self.settings.shortcode,
            "Password": stk_password(self.settings.shortcode, self.settings.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.transaction_type,
            "Amount": int(amount),
            "PartyA": msisdn,
            "PartyB": self.settings.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": callback_url or self.settings.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }

        try:
            response = await self._http.post(
                self.settings.base_url + STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise GatewayRejected(f"STK push timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise GatewayRejected(f"STK push request failed: {e!r}") from e

        try:
            data = response.json()
        except ValueError:
            raise GatewayRejected(f"Non-JSON STK push response (HTTP {response.status_code})")

        if not isinstance(data, dict):
            raise GatewayRejected(f"Unexpected STK push response (HTTP {response.status_code})")

        response_code = str(data.get("ResponseCode", ""))
        if response.status_code != 200 or response_code != "0":
            reason = data.get("errorMessage") or data.get("ResponseDescription") or "unknown"
            raise GatewayRejected(
                f"STK push rejected: {reason} (HTTP {response.status_code})",
                response_code=response_code or data.get("errorCode"),
            )

        correlation_key = data.get("CheckoutRequestID")
        merchant_request_id = data.get("MerchantRequestID")
        if not correlation_key or not merchant_request_id:
            raise GatewayRejected("STK push accepted without correlation identifiers", response_code="0")

        await self.store.record_request(
            PaymentRequest(
                correlation_key=correlation_key,
                merchant_request_id=merchant_request_id,
                phone=msisdn,
                amount=float(amount),
                account_reference=account_reference,
                order=order,
                customer_message=data.get("CustomerMessage"),
            )
        )
        logger.info("STK push sent to %s for %s, correlation key %s", msisdn, amount, correlation_key)
        return InitiateResult(
            correlation_key=correlation_key,
            merchant_request_id=merchant_request_id,
            customer_message=data.get("CustomerMessage"),
        )
