"""Payment initiation: validate, resolve credentials, drive a provider, persist."""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from .adapters import ProviderAcceptance, ProviderAdapter, get_adapter_class
from .adapters.base import parse_amount, validate_currency_code
from .adapters.mobile_money import MobileMoneyAdapter
from .config import Settings
from .exceptions import CredentialError, ValidationError
from .logging_config import payment_logger
from .models import Subscription, SubscriptionHistory, Transaction
from .phone import normalize_msisdn
from .stores import (
    CredentialStore,
    InvoiceStore,
    PaymentLinkStore,
    ProfileStore,
    SubscriptionHistoryStore,
    SubscriptionStore,
    TransactionStore,
)
from .token_cache import TokenCache

logger = logging.getLogger(__name__)


@dataclass
class InitiationContext:
    invoice_id: Optional[str] = None
    link_id: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None
    country: Optional[str] = None
    return_path: Optional[str] = None


@dataclass
class InitiationResult:
    correlation_id: str
    record_id: str
    message: str
    approval_url: Optional[str] = None


@dataclass
class _Started:
    acceptance: ProviderAcceptance
    amount: Decimal
    payer_reference: Optional[str]
    currency: str


class PaymentInitiator:
    """Starts payments with a provider and records them as pending.

    Nothing is persisted unless the provider accepts the request, and each
    call makes exactly one initiation request to the provider.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        credentials: CredentialStore,
        transactions: TransactionStore,
        subscriptions: SubscriptionStore,
        invoices: InvoiceStore,
        profiles: ProfileStore,
        links: PaymentLinkStore,
        token_cache: Optional[TokenCache] = None,
        history: Optional[SubscriptionHistoryStore] = None,
    ):
        self._settings = settings
        self._client = http_client
        self._credentials = credentials
        self._transactions = transactions
        self._subscriptions = subscriptions
        self._invoices = invoices
        self._profiles = profiles
        self._links = links
        self._token_cache = token_cache
        self._history = history

    def _default_currency(self, provider: str) -> str:
        if provider == MobileMoneyAdapter.name:
            return self._settings.MOBILE_MONEY_CURRENCY
        return self._settings.CARD_CURRENCY

    async def _country_for(self, merchant_id: str) -> str:
        profile = await self._profiles.get(merchant_id)
        if profile is not None and profile.country:
            return profile.country
        return self._settings.DEFAULT_COUNTRY

    async def _start(
        self,
        credential_owner: str,
        provider: str,
        raw_amount: Any,
        payer_reference: Optional[str],
        reference: str,
        context: InitiationContext,
    ) -> _Started:
        adapter_cls = get_adapter_class(provider)

        if provider == MobileMoneyAdapter.name:
            if not payer_reference:
                raise ValidationError("Phone number and amount are required")
            payer_reference = normalize_msisdn(
                payer_reference, context.country or self._settings.DEFAULT_COUNTRY
            )
        elif payer_reference is not None:
            payer_reference = payer_reference.strip() or None

        amount = parse_amount(raw_amount)

        currency = (context.currency or self._default_currency(provider)).upper()
        if not validate_currency_code(currency):
            raise ValidationError(f"Invalid currency code: {currency}")
        if (
            provider == MobileMoneyAdapter.name
            and currency != self._settings.MOBILE_MONEY_CURRENCY
        ):
            # Push payments are always charged in the local currency
            raise ValidationError(
                f"Mobile money payments must be in {self._settings.MOBILE_MONEY_CURRENCY}, not {currency}"
            )

        credential = await self._credentials.get_active(credential_owner, provider)
        if credential is None:
            raise CredentialError(
                f"No active {provider} credentials found. "
                "Please set up the integration in Payment Methods first."
            )

        adapter: ProviderAdapter = adapter_cls(
            credential,
            self._client,
            self._token_cache,
            site_origin=self._settings.SITE_ORIGIN,
            brand_name=self._settings.BRAND_NAME,
            return_path=context.return_path or "/dashboard/transactions",
        )
        logger.info(
            "Initiating %s payment of %s %s for %s (ref %s)",
            provider,
            amount,
            currency,
            credential_owner,
            reference,
        )
        acceptance = await adapter.initiate(
            amount,
            payer_reference,
            reference,
            adapter_cls.callback_url(self._settings.PUBLIC_BASE_URL),
            description=context.description,
            currency=currency,
        )
        return _Started(acceptance, amount, payer_reference, currency)

    async def initiate(
        self,
        merchant_id: str,
        amount: Any,
        payer_reference: Optional[str],
        provider: str,
        context: Optional[InitiationContext] = None,
    ) -> InitiationResult:
        """Start a payment into ``merchant_id``'s account.

        Raises:
            ValidationError: Bad amount, phone number, currency or invoice
            CredentialError: No active credentials for ``provider``
            ProviderAuthError: Provider token could not be obtained
            ProviderRejected: Provider declined the request
        """
        context = context or InitiationContext()
        if context.country is None:
            context.country = await self._country_for(merchant_id)

        if context.invoice_id:
            invoice = await self._invoices.get(context.invoice_id, merchant_id)
            if invoice is None:
                raise ValidationError(f"Invoice not found: {context.invoice_id}")
            if invoice.status == "paid":
                raise ValidationError(f"Invoice already paid: {context.invoice_id}")
            context.currency = context.currency or invoice.currency

        reference = (
            context.invoice_id
            or (f"link_{context.link_id}" if context.link_id else None)
            or f"PAY-{int(time.time() * 1000)}"
        )
        started = await self._start(
            merchant_id, provider, amount, payer_reference, reference, context
        )
        acceptance = started.acceptance
        log = payment_logger(logger, acceptance.correlation_id, provider)

        transaction = Transaction(
            merchant_id=merchant_id,
            invoice_id=context.invoice_id,
            link_id=context.link_id,
            amount=started.amount,
            currency=started.currency,
            payer_reference=started.payer_reference,
            provider=provider,
            correlation_id=acceptance.correlation_id,
            merchant_request_id=acceptance.secondary_id,
            status="pending",
            metadata_={"reference": reference},
        )
        try:
            await self._transactions.insert(transaction)
        except Exception:
            log.exception("Provider accepted payment but the pending transaction was not recorded")
            raise

        log.info("Payment initiated; transaction %s pending", transaction.id)
        return InitiationResult(
            correlation_id=acceptance.correlation_id,
            record_id=transaction.id,
            message=acceptance.message,
            approval_url=acceptance.approval_url,
        )

    async def initiate_for_link(
        self,
        slug: str,
        amount: Any,
        payer_reference: Optional[str],
        provider: str,
    ) -> InitiationResult:
        """Start a payment through a merchant's public payment link."""
        link = await self._links.get_active_by_slug(slug)
        if link is None:
            raise ValidationError("Payment link not found or inactive")

        parsed = parse_amount(amount)
        if parsed < link.min_amount:
            raise ValidationError(
                f"Amount must be at least {link.currency} {link.min_amount}"
            )

        context = InitiationContext(
            link_id=link.id,
            description=link.description or link.title,
            currency=link.currency,
            return_path=f"/pay/link/{link.slug}",
        )
        return await self.initiate(link.merchant_id, parsed, payer_reference, provider, context)

    async def initiate_subscription(
        self,
        merchant_id: str,
        plan_name: str,
        amount: Any,
        provider: str,
        payer_reference: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> InitiationResult:
        """Start a plan subscription payment to the platform account."""
        if not plan_name:
            raise ValidationError("Plan name is required")

        context = InitiationContext(
            description=f"{self._settings.BRAND_NAME} {plan_name} Subscription",
            currency=currency,
            country=await self._country_for(merchant_id),
            return_path="/dashboard/subscription",
        )
        started = await self._start(
            self._settings.PLATFORM_MERCHANT_ID,
            provider,
            amount,
            payer_reference,
            f"SUB-{merchant_id[:8]}",
            context,
        )
        acceptance = started.acceptance
        log = payment_logger(logger, acceptance.correlation_id, provider)

        subscription = Subscription(
            merchant_id=merchant_id,
            plan_name=plan_name,
            amount=started.amount,
            currency=started.currency,
            payer_reference=started.payer_reference,
            provider=provider,
            correlation_id=acceptance.correlation_id,
            status="pending",
        )
        try:
            await self._subscriptions.insert(subscription)
        except Exception:
            log.exception("Provider accepted subscription payment but it was not recorded")
            raise

        if self._history is not None:
            try:
                await self._history.insert(
                    SubscriptionHistory(
                        merchant_id=merchant_id,
                        subscription_id=subscription.id,
                        plan_name=plan_name,
                        amount=started.amount,
                        currency=started.currency,
                        provider=provider,
                        transaction_ref=acceptance.correlation_id,
                    )
                )
            except Exception:
                log.exception("Failed to record subscription history for %s", subscription.id)

        log.info("Subscription %s pending for %s (%s)", subscription.id, merchant_id, plan_name)
        return InitiationResult(
            correlation_id=acceptance.correlation_id,
            record_id=subscription.id,
            message=acceptance.message,
            approval_url=acceptance.approval_url,
        )
