from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from lipasasa.exceptions import (
    CredentialError,
    ProviderAuthError,
    ProviderRejected,
    ValidationError,
)
from lipasasa.initiator import InitiationContext, PaymentInitiator
from lipasasa.models import Invoice, PaymentLink, Subscription, SubscriptionHistory, Transaction
from lipasasa.stores import (
    CredentialStore,
    InvoiceStore,
    PaymentLinkStore,
    ProfileStore,
    SubscriptionHistoryStore,
    SubscriptionStore,
    TransactionStore,
)
from lipasasa.token_cache import TokenCache

from .conftest import (
    CARD_ORDERS_PATH,
    MERCHANT_ID,
    MM_STK_PATH,
    MM_TOKEN_PATH,
    mobile_money_credential,
    seed,
)


def make_initiator(settings, sessionmaker, provider, redis=None):
    return PaymentInitiator(
        settings,
        provider.client(),
        credentials=CredentialStore(sessionmaker),
        transactions=TransactionStore(sessionmaker),
        subscriptions=SubscriptionStore(sessionmaker),
        invoices=InvoiceStore(sessionmaker),
        profiles=ProfileStore(sessionmaker),
        links=PaymentLinkStore(sessionmaker),
        token_cache=TokenCache(redis),
        history=SubscriptionHistoryStore(sessionmaker),
    )


async def count(sessionmaker, model):
    async with sessionmaker() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest_asyncio.fixture
async def initiator(settings, sessionmaker, provider, merchant):
    return make_initiator(settings, sessionmaker, provider)


@pytest.mark.asyncio
async def test_push_payment_persists_one_pending_transaction(initiator, sessionmaker, provider):
    result = await initiator.initiate(MERCHANT_ID, "150.50", "0712 345 678", "mobile_money")

    assert result.correlation_id == "ws_CO_191220191020363925"
    assert len(provider.calls(MM_STK_PATH)) == 1

    payload = provider.body(provider.calls(MM_STK_PATH)[0])
    assert payload["Amount"] == 151
    assert payload["PhoneNumber"] == "254712345678"
    assert payload["CallBackURL"] == "https://pay.example.com/callback/mobile_money"
    assert payload["AccountReference"].startswith("PAY-")

    async with sessionmaker() as session:
        transaction = await session.get(Transaction, result.record_id)
    assert transaction.status == "pending"
    assert transaction.merchant_id == MERCHANT_ID
    assert transaction.amount == Decimal("150.50")
    assert transaction.currency == "KES"
    assert transaction.payer_reference == "254712345678"
    assert transaction.correlation_id == result.correlation_id
    assert transaction.merchant_request_id == "29115-34620561-1"
    assert await count(sessionmaker, Transaction) == 1


@pytest.mark.asyncio
async def test_provider_rejection_persists_nothing(initiator, sessionmaker, provider):
    provider.json(
        "POST",
        MM_STK_PATH,
        200,
        {"ResponseCode": "1", "ResponseDescription": "Invalid Access Token"},
    )

    with pytest.raises(ProviderRejected, match="Invalid Access Token"):
        await initiator.initiate(MERCHANT_ID, 100, "0712345678", "mobile_money")

    assert await count(sessionmaker, Transaction) == 0


@pytest.mark.asyncio
async def test_token_failure_is_provider_auth_error(initiator, sessionmaker, provider):
    provider.json("GET", MM_TOKEN_PATH, 401, {"errorMessage": "bad secret"})

    with pytest.raises(ProviderAuthError):
        await initiator.initiate(MERCHANT_ID, 100, "0712345678", "mobile_money")

    assert provider.calls(MM_STK_PATH) == []
    assert await count(sessionmaker, Transaction) == 0


@pytest.mark.asyncio
async def test_invalid_phone_never_reaches_provider(initiator, provider):
    with pytest.raises(ValidationError):
        await initiator.initiate(MERCHANT_ID, 100, "0812345678", "mobile_money")

    assert provider.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-10", "abc", "NaN"])
async def test_invalid_amount_never_reaches_provider(initiator, provider, amount):
    with pytest.raises(ValidationError):
        await initiator.initiate(MERCHANT_ID, amount, "0712345678", "mobile_money")

    assert provider.requests == []


@pytest.mark.asyncio
async def test_unknown_provider_is_validation_error(initiator):
    with pytest.raises(ValidationError, match="Unsupported provider"):
        await initiator.initiate(MERCHANT_ID, 100, "0712345678", "bank_wire")


@pytest.mark.asyncio
async def test_missing_credentials(settings, sessionmaker, provider):
    initiator = make_initiator(settings, sessionmaker, provider)

    with pytest.raises(CredentialError):
        await initiator.initiate("merchant-without-setup", 100, "0712345678", "mobile_money")

    assert provider.requests == []


@pytest.mark.asyncio
async def test_inactive_credentials_are_ignored(settings, sessionmaker, provider):
    await seed(sessionmaker, mobile_money_credential("merchant-inactive", is_active=False))
    initiator = make_initiator(settings, sessionmaker, provider)

    with pytest.raises(CredentialError):
        await initiator.initiate("merchant-inactive", 100, "0712345678", "mobile_money")


@pytest.mark.asyncio
async def test_invoice_payment_uses_invoice_reference(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        Invoice(id="inv-001", merchant_id=MERCHANT_ID, amount=Decimal("500"), currency="KES"),
    )

    result = await initiator.initiate(
        MERCHANT_ID,
        500,
        "0712345678",
        "mobile_money",
        InitiationContext(invoice_id="inv-001", description="Invoice inv-001"),
    )

    payload = provider.body(provider.calls(MM_STK_PATH)[0])
    assert payload["AccountReference"] == "inv-001"
    assert payload["TransactionDesc"] == "Invoice inv-001"
    async with sessionmaker() as session:
        transaction = await session.get(Transaction, result.record_id)
    assert transaction.invoice_id == "inv-001"


@pytest.mark.asyncio
async def test_foreign_invoice_is_rejected(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        Invoice(id="inv-other", merchant_id="someone-else", amount=Decimal("5"), currency="KES"),
    )

    with pytest.raises(ValidationError, match="Invoice not found"):
        await initiator.initiate(
            MERCHANT_ID, 5, "0712345678", "mobile_money", InitiationContext(invoice_id="inv-other")
        )
    assert provider.requests == []


@pytest.mark.asyncio
async def test_card_order_returns_approval_url(initiator, sessionmaker, provider):
    result = await initiator.initiate(MERCHANT_ID, "19.5", None, "card_order")

    assert result.correlation_id == "5O190127TN364715T"
    assert result.approval_url.endswith("token=5O190127TN364715T")
    order = provider.body(provider.calls(CARD_ORDERS_PATH)[0])
    assert order["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "19.50"}
    assert order["application_context"]["return_url"].startswith("https://app.example.com/")

    async with sessionmaker() as session:
        transaction = await session.get(Transaction, result.record_id)
    assert transaction.provider == "card_order"
    assert transaction.status == "pending"


@pytest.mark.asyncio
async def test_token_is_reused_across_initiations(settings, sessionmaker, provider, merchant, mock_redis):
    cache = {}

    async def get(key):
        return cache.get(key)

    async def setex(key, ttl, value):
        cache[key] = value

    mock_redis.get.side_effect = get
    mock_redis.setex.side_effect = setex
    initiator = make_initiator(settings, sessionmaker, provider, redis=mock_redis)

    await initiator.initiate(MERCHANT_ID, 10, "0712345678", "mobile_money")
    provider.json(
        "POST",
        MM_STK_PATH,
        200,
        {"CheckoutRequestID": "ws_CO_second", "ResponseCode": "0"},
    )
    await initiator.initiate(MERCHANT_ID, 10, "0712345678", "mobile_money")

    assert len(provider.calls(MM_TOKEN_PATH)) == 1
    assert len(provider.calls(MM_STK_PATH)) == 2


@pytest.mark.asyncio
async def test_payment_link_flow(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        PaymentLink(
            id="link-1",
            merchant_id=MERCHANT_ID,
            slug="school-fees",
            title="School fees",
            currency="KES",
            min_amount=Decimal("100"),
        ),
    )

    result = await initiator.initiate_for_link("school-fees", 250, "0712345678", "mobile_money")

    payload = provider.body(provider.calls(MM_STK_PATH)[0])
    assert payload["AccountReference"] == "link_link-1"
    assert payload["TransactionDesc"] == "School fees"
    async with sessionmaker() as session:
        transaction = await session.get(Transaction, result.record_id)
    assert transaction.link_id == "link-1"
    assert transaction.merchant_id == MERCHANT_ID


@pytest.mark.asyncio
async def test_payment_link_minimum_amount(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        PaymentLink(
            id="link-2",
            merchant_id=MERCHANT_ID,
            slug="donate",
            title="Donate",
            currency="KES",
            min_amount=Decimal("50"),
        ),
    )

    with pytest.raises(ValidationError, match="at least KES 50"):
        await initiator.initiate_for_link("donate", 10, "0712345678", "mobile_money")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_inactive_payment_link(initiator):
    with pytest.raises(ValidationError, match="not found or inactive"):
        await initiator.initiate_for_link("missing", 10, "0712345678", "mobile_money")


@pytest.mark.asyncio
async def test_subscription_uses_platform_credentials(initiator, sessionmaker, provider):
    result = await initiator.initiate_subscription(
        MERCHANT_ID, "pro", 1500, "mobile_money", payer_reference="0712345678"
    )

    payload = provider.body(provider.calls(MM_STK_PATH)[0])
    assert payload["AccountReference"] == f"SUB-{MERCHANT_ID[:8]}"
    assert payload["TransactionDesc"] == "LipaSasa pro Subscription"
    assert payload["CallBackURL"] == "https://pay.example.com/callback/mobile_money"

    async with sessionmaker() as session:
        subscription = await session.get(Subscription, result.record_id)
    assert subscription.status == "pending"
    assert subscription.plan_name == "pro"
    assert subscription.merchant_id == MERCHANT_ID
    assert subscription.correlation_id == result.correlation_id
    assert await count(sessionmaker, Transaction) == 0
    async with sessionmaker() as session:
        history = (await session.execute(select(SubscriptionHistory))).scalar_one()
    assert history.status == "pending"
    assert history.subscription_id == subscription.id
    assert history.transaction_ref == result.correlation_id
    assert history.provider == "mobile_money"


@pytest.mark.asyncio
async def test_subscription_survives_history_failure(settings, sessionmaker, provider, merchant):
    initiator = make_initiator(settings, sessionmaker, provider)
    initiator._history.insert = AsyncMock(side_effect=RuntimeError("history table missing"))

    result = await initiator.initiate_subscription(
        MERCHANT_ID, "pro", 1500, "mobile_money", payer_reference="0712345678"
    )

    async with sessionmaker() as session:
        subscription = await session.get(Subscription, result.record_id)
    assert subscription.status == "pending"


@pytest.mark.asyncio
async def test_foreign_currency_invoice_cannot_use_mobile_money(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        Invoice(id="inv-usd", merchant_id=MERCHANT_ID, amount=Decimal("10.50"), currency="USD"),
    )

    with pytest.raises(ValidationError, match="must be in KES"):
        await initiator.initiate(
            MERCHANT_ID, "10.50", "0712345678", "mobile_money", InitiationContext(invoice_id="inv-usd")
        )

    assert provider.requests == []
    assert await count(sessionmaker, Transaction) == 0


@pytest.mark.asyncio
async def test_foreign_currency_invoice_can_use_card(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        Invoice(id="inv-usd", merchant_id=MERCHANT_ID, amount=Decimal("10.50"), currency="USD"),
    )

    result = await initiator.initiate(
        MERCHANT_ID, "10.50", None, "card_order", InitiationContext(invoice_id="inv-usd")
    )

    async with sessionmaker() as session:
        transaction = await session.get(Transaction, result.record_id)
    assert transaction.currency == "USD"


@pytest.mark.asyncio
async def test_foreign_currency_link_cannot_use_mobile_money(initiator, sessionmaker, provider):
    await seed(
        sessionmaker,
        PaymentLink(
            id="link-usd",
            merchant_id=MERCHANT_ID,
            slug="tour-deposit",
            title="Tour deposit",
            currency="USD",
            min_amount=Decimal("5"),
        ),
    )

    with pytest.raises(ValidationError, match="must be in KES"):
        await initiator.initiate_for_link("tour-deposit", 20, "0712345678", "mobile_money")

    assert provider.requests == []
