import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkout.channels import NotificationChannel
from checkout.config import EmailSettings, GatewaySettings, Settings, WhatsAppSettings
from checkout.errors import ChannelDeliveryError
from checkout.gateway import MpesaClient
from checkout.models import Base
from checkout.store import CorrelationStore


@pytest.fixture
def gateway_settings():
    return GatewaySettings(
        consumer_key="test-consumer-key",
        consumer_secret="test-consumer-secret",
        shortcode="174379",
        passkey="test-passkey",
        callback_url="https://shop.example.com/api/payments/callback",
    )


@pytest.fixture
def settings(gateway_settings):
    return Settings(
        gateway=gateway_settings,
        brand_name="Bohemian Integrations",
        email=EmailSettings(api_key="SG.test", sender="shop@example.com", owner_email="owner@example.com"),
        whatsapp=WhatsAppSettings(token="wa-token", phone_id="12345", owner_phone="254700000001"),
        database_url="sqlite+aiosqlite://",
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield CorrelationStore(session_factory)
    await engine.dispose()


class FakeGateway:
    """MockTransport handler standing in for the OAuth and STK push endpoints."""

    def __init__(self, checkout_request_id="ws_CO_X1", stk_status=200, stk_body=None, token_status=200):
        self.checkout_request_id = checkout_request_id
        self.stk_status = stk_status
        self.stk_body = stk_body
        self.token_status = token_status
        self.token_calls = 0
        self.stk_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="Invalid credentials")
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            self.stk_requests.append(request)
            body = self.stk_body or {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": self.checkout_request_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            }
            return httpx.Response(self.stk_status, json=body)

        return httpx.Response(404)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def mpesa_client(gateway_settings, store, fake_gateway):
    client = MpesaClient(
        gateway_settings,
        store,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_gateway)),
    )
    yield client
    await client.aclose()


class FakeChannel(NotificationChannel):
    def __init__(self, name, fail=False, customer="customer@example.com", owner="owner@example.com"):
        self.name = name
        self.fail = fail
        self.customer = customer
        self.owner = owner
        self.sent = []
        self.attempts = []

    def customer_recipient(self, order):
        return self.customer

    def owner_recipient(self):
        return self.owner

    async def send(self, recipient, message, attachment=None):
        self.attempts.append(recipient)
        if self.fail:
            raise ChannelDeliveryError(self.name, recipient, "HTTP 503: unavailable")
        self.sent.append((recipient, message, attachment))

    async def aclose(self):
        pass


@pytest.fixture
def make_callback():
    def _make(checkout_request_id="ws_CO_X1", result_code=0, result_desc=None, metadata=None):
        callback = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
        }
        if result_code == 0:
            if metadata is None:
                metadata = {
                    "Amount": 500,
                    "MpesaReceiptNumber": "R1",
                    "TransactionDate": 20251019143012,
                    "PhoneNumber": 254711000111,
                }
            callback["CallbackMetadata"] = {
                "Item": [{"Name": name, "Value": value} for name, value in metadata.items()]
            }
        return json.dumps({"Body": {"stkCallback": callback}}).encode("utf-8")

    return _make


# Stands in for the async context manager returned by message.process().
@pytest.fixture
def mock_message_context():
    class AsyncContextManager:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return AsyncContextManager()


@pytest.fixture
def channel_factory():
    return FakeChannel
