"""
Pytest configuration and fixtures for the payments service tests.
"""

import json
import os
import sys
from typing import Any, Callable, Dict, List, Tuple, Union
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# Allow running the suite from a checkout without installing the package
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.append(ROOT_DIR)

from lipasasa.config import Settings  # noqa: E402
from lipasasa.models import Base, Profile, ProviderCredential  # noqa: E402
from lipasasa.stores import hash_api_key  # noqa: E402

MERCHANT_ID = "merchant-0001"
MERCHANT_API_KEY = "sk_test_merchant"
PLATFORM_ID = "platform"


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        PUBLIC_BASE_URL="https://pay.example.com",
        SITE_ORIGIN="https://app.example.com",
        PLATFORM_MERCHANT_ID=PLATFORM_ID,
        PENDING_TTL_MINUTES=60,
    )


@pytest_asyncio.fixture
async def sessionmaker(tmp_path):
    """Fresh file-backed SQLite database per test.

    File-backed so that concurrent sessions get their own connections.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def seed(sessionmaker, *objects):
    async with sessionmaker() as session:
        session.add_all(objects)
        await session.commit()
    return objects


def mobile_money_credential(merchant_id: str = MERCHANT_ID, **overrides) -> ProviderCredential:
    values = dict(
        id=f"cred-mm-{merchant_id}",
        merchant_id=merchant_id,
        provider="mobile_money",
        environment="sandbox",
        client_id="consumer-key",
        client_secret="consumer-secret",
        shortcode="174379",
        passkey="passkey",
        is_active=True,
    )
    values.update(overrides)
    return ProviderCredential(**values)


def card_credential(merchant_id: str = MERCHANT_ID, **overrides) -> ProviderCredential:
    values = dict(
        id=f"cred-card-{merchant_id}",
        merchant_id=merchant_id,
        provider="card_order",
        environment="sandbox",
        client_id="client-id",
        client_secret="client-secret",
        is_active=True,
    )
    values.update(overrides)
    return ProviderCredential(**values)


@pytest_asyncio.fixture
async def merchant(sessionmaker):
    """A Kenyan merchant with active credentials for both providers."""
    profile = Profile(
        merchant_id=MERCHANT_ID,
        api_key_hash=hash_api_key(MERCHANT_API_KEY),
        country="KE",
        selected_plan="free",
    )
    await seed(
        sessionmaker,
        profile,
        mobile_money_credential(),
        card_credential(),
        mobile_money_credential(PLATFORM_ID),
        card_credential(PLATFORM_ID),
    )
    return profile


Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


class FakeProvider:
    """Routes outbound provider calls to canned responses by URL path."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Responder] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, responder: Responder) -> "FakeProvider":
        self.routes[(method.upper(), path)] = responder
        return self

    def json(self, method: str, path: str, status: int, body: Any) -> "FakeProvider":
        return self.on(method, path, httpx.Response(status, json=body))

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def body(self, request: httpx.Request) -> Any:
        return json.loads(request.content.decode())

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get((request.method, request.url.path))
        if responder is None:
            return httpx.Response(404, json={"message": "no route"})
        if isinstance(responder, Exception):
            raise responder
        if callable(responder):
            return responder(request)
        return responder

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


MM_TOKEN_PATH = "/oauth/v1/generate"
MM_STK_PATH = "/mpesa/stkpush/v1/processrequest"
CARD_TOKEN_PATH = "/v1/oauth2/token"
CARD_ORDERS_PATH = "/v2/checkout/orders"


@pytest.fixture
def provider():
    """Fake provider that accepts both push payments and orders."""
    fake = FakeProvider()
    fake.json("GET", MM_TOKEN_PATH, 200, {"access_token": "mm-token", "expires_in": "3599"})
    fake.json(
        "POST",
        MM_STK_PATH,
        200,
        {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        },
    )
    fake.json("POST", CARD_TOKEN_PATH, 200, {"access_token": "card-token", "expires_in": 32400})
    fake.json(
        "POST",
        CARD_ORDERS_PATH,
        201,
        {
            "id": "5O190127TN364715T",
            "status": "CREATED",
            "links": [
                {"href": "https://api.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T", "rel": "self"},
                {"href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T", "rel": "approve"},
            ],
        },
    )
    return fake


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing."""
    redis_mock = AsyncMock()
    redis_mock.ping.return_value = True
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.close.return_value = None
    return redis_mock


def stk_callback(
    checkout_request_id: str = "ws_CO_191220191020363925",
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: str = "NLJ7RT61SV",
    amount: Any = 1.0,
) -> Dict[str, Any]:
    callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": 254708374149},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def order_webhook(event_type: str, order_id: str = "5O190127TN364715T", capture: bool = False) -> Dict[str, Any]:
    if capture:
        resource = {
            "id": "3C679366HH908993F",
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": "29.99"},
            "supplementary_data": {"related_ids": {"order_id": order_id}},
        }
    else:
        resource = {
            "id": order_id,
            "status": "APPROVED",
            "purchase_units": [{"amount": {"currency_code": "USD", "value": "29.99"}}],
        }
    return {"id": "WH-2WR32451HC0233532-67976317FL4543714", "event_type": event_type, "resource": resource}


# Configure pytest-asyncio
def pytest_configure(config):
    """Configure pytest with asyncio support."""
    config.addinivalue_line("markers", "asyncio: mark test as async")
