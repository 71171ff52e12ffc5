"""Callback reconciliation: match provider callbacks to pending records.

Providers deliver callbacks at least once, in any order, and retry on anything
but a 2xx. ``CallbackReconciler.reconcile`` therefore never raises: every
failure is logged with the correlation id and the provider still receives its
acknowledgement. The terminal transition itself is a conditional update, so
of any number of concurrent deliveries for one correlation id exactly one
writer wins and the rest are no-ops.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .adapters import CallbackOutcome, detect_provider, get_adapter_class
from .exceptions import DuplicateCallback, LateSettlement, NotFoundError, PaymentError
from .logging_config import payment_logger
from .models import Subscription, SubscriptionStatus, Transaction, TransactionStatus
from .stores import (
    InvoiceStore,
    ProfileStore,
    SubscriptionHistoryStore,
    SubscriptionStore,
    TransactionStore,
)
from .sweeper import EXPIRED_CODE, EXPIRED_DESC

logger = logging.getLogger(__name__)

PENDING = "pending"


class WriteFailureAlerter:
    """Escalates primary-write failures that the provider will never retry."""

    def __init__(self, http_client: Optional[httpx.AsyncClient], webhook_url: Optional[str]):
        self._client = http_client
        self._webhook_url = webhook_url

    async def __call__(self, log: logging.LoggerAdapter, message: str, exc: BaseException) -> None:
        log.critical("%s: %s", message, exc, exc_info=exc)
        if self._client is None or not self._webhook_url:
            return
        try:
            await self._client.post(
                self._webhook_url,
                json={
                    "text": message,
                    "error": str(exc),
                    "correlation_id": log.extra.get("correlation_id"),
                    "provider": log.extra.get("provider"),
                },
            )
        except httpx.HTTPError as alert_exc:
            log.error("Failed to post write-failure alert: %s", alert_exc)


async def best_effort(
    log: logging.LoggerAdapter,
    name: str,
    action: Callable[[], Awaitable[Any]],
) -> bool:
    """Run one cascade inside its own error boundary."""
    try:
        result = await action()
    except Exception:
        log.exception("Cascade %s failed", name)
        return False
    if result is False:
        log.warning("Cascade %s matched no rows", name)
        return False
    log.info("Cascade %s applied", name)
    return True


class CallbackReconciler:
    def __init__(
        self,
        transactions: TransactionStore,
        subscriptions: SubscriptionStore,
        invoices: InvoiceStore,
        profiles: ProfileStore,
        subscription_period_days: int = 30,
        alerter: Optional[WriteFailureAlerter] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        history: Optional[SubscriptionHistoryStore] = None,
    ):
        self._transactions = transactions
        self._subscriptions = subscriptions
        self._invoices = invoices
        self._profiles = profiles
        self._period = timedelta(days=subscription_period_days)
        self._alert = alerter or WriteFailureAlerter(None, None)
        self._clock = clock
        self._history = history

    async def reconcile(
        self, raw_payload: Any, provider: Optional[str] = None
    ) -> Dict[str, Any]:
        """Apply one callback delivery and return the provider acknowledgement."""
        log = payment_logger(logger, None, provider)
        try:
            provider = provider or detect_provider(raw_payload)
            adapter_cls = get_adapter_class(provider)
        except PaymentError as exc:
            log.warning("Rejected callback: %s", exc)
            return {"received": True}

        ack = adapter_cls.acknowledgement()
        try:
            outcome = adapter_cls.parse_callback(raw_payload)
        except PaymentError as exc:
            log.warning("Rejected %s callback: %s", provider, exc)
            return ack

        log = payment_logger(logger, outcome.correlation_id, provider)
        try:
            await self._apply(outcome, log)
        except NotFoundError as exc:
            log.warning("%s; acknowledged", exc)
        except LateSettlement as exc:
            await self._alert(log, "Provider confirmed payment for an expired record", exc)
        except DuplicateCallback as exc:
            log.info("%s; acknowledged without changes", exc)
        except Exception as exc:
            await self._alert(log, "Callback processing failed", exc)
        return ack

    async def _apply(self, outcome: CallbackOutcome, log: logging.LoggerAdapter) -> None:
        log.info(
            "Callback received: kind=%s result_code=%s desc=%s",
            outcome.kind,
            outcome.result_code,
            outcome.result_desc,
        )
        if outcome.kind == "ignored":
            log.info("Unhandled event %s; acknowledged", outcome.event_type)
            return

        transaction = await self._transactions.get_by_correlation_id(
            outcome.provider, outcome.correlation_id
        )
        if transaction is not None:
            await self._settle_transaction(transaction, outcome, log)
            return

        subscription = await self._subscriptions.get_by_correlation_id(
            outcome.provider, outcome.correlation_id
        )
        if subscription is not None:
            await self._settle_subscription(subscription, outcome, log)
            return

        raise NotFoundError(f"No pending record for {outcome.correlation_id}")

    async def _settle_transaction(
        self,
        transaction: Transaction,
        outcome: CallbackOutcome,
        log: logging.LoggerAdapter,
    ) -> None:
        if transaction.status != PENDING:
            if outcome.succeeded and transaction.result_code == EXPIRED_CODE:
                raise LateSettlement(
                    f"Transaction {transaction.id} expired but provider reports payment "
                    f"(receipt {outcome.receipt_or_capture_id})"
                )
            raise DuplicateCallback(
                f"Transaction {transaction.id} already {transaction.status}"
            )

        now = self._clock()
        values: Dict[str, Any] = {
            "result_code": outcome.result_code,
            "result_desc": outcome.result_desc,
        }
        if outcome.succeeded:
            values.update(
                status=TransactionStatus.COMPLETED.value,
                receipt_or_capture_id=outcome.receipt_or_capture_id,
                amount_paid=outcome.amount_paid,
                paid_at=now,
            )
        else:
            values["status"] = TransactionStatus.FAILED.value

        won = await self._write(self._transactions, outcome, values, log)
        if not won:
            return
        log.info("Transaction %s -> %s", transaction.id, values["status"])

        if outcome.succeeded and transaction.invoice_id:
            invoice_id = transaction.invoice_id
            await best_effort(
                log, "invoice.mark_paid", lambda: self._invoices.mark_paid(invoice_id)
            )

    async def _settle_subscription(
        self,
        subscription: Subscription,
        outcome: CallbackOutcome,
        log: logging.LoggerAdapter,
    ) -> None:
        if subscription.status != PENDING:
            if outcome.succeeded and subscription.failure_reason == EXPIRED_DESC:
                raise LateSettlement(
                    f"Subscription {subscription.id} expired but provider reports payment "
                    f"(receipt {outcome.receipt_or_capture_id})"
                )
            raise DuplicateCallback(
                f"Subscription {subscription.id} already {subscription.status}"
            )

        now = self._clock()
        if outcome.succeeded:
            values: Dict[str, Any] = {
                "status": SubscriptionStatus.ACTIVE.value,
                "receipt_or_capture_id": outcome.receipt_or_capture_id,
                "paid_at": now,
                "start_date": now,
                "end_date": now + self._period,
            }
        else:
            values = {
                "status": SubscriptionStatus.FAILED.value,
                "failure_reason": outcome.result_desc,
            }

        won = await self._write(self._subscriptions, outcome, values, log)
        if not won:
            return
        log.info("Subscription %s -> %s", subscription.id, values["status"])

        if self._history is not None:
            if outcome.succeeded:
                entry = {
                    "status": "completed",
                    "receipt_or_capture_id": outcome.receipt_or_capture_id,
                }
            else:
                entry = {"status": "failed", "failure_reason": outcome.result_desc}
            await best_effort(
                log,
                "subscription_history.record_outcome",
                lambda: self._history.record_outcome(
                    outcome.provider, outcome.correlation_id, entry
                ),
            )

        if not outcome.succeeded:
            return

        merchant_id = subscription.merchant_id
        plan_name = subscription.plan_name
        await best_effort(
            log,
            "profile.set_selected_plan",
            lambda: self._profiles.set_selected_plan(merchant_id, plan_name),
        )
        await best_effort(
            log,
            "transactions.record_subscription_payment",
            lambda: self._transactions.insert(
                Transaction(
                    merchant_id=merchant_id,
                    amount=outcome.amount_paid or subscription.amount,
                    currency=subscription.currency,
                    payer_reference=outcome.payer_reference or subscription.payer_reference,
                    provider=outcome.provider,
                    correlation_id=outcome.correlation_id,
                    merchant_request_id=outcome.merchant_request_id,
                    status=TransactionStatus.COMPLETED.value,
                    result_code=outcome.result_code,
                    result_desc=outcome.result_desc,
                    receipt_or_capture_id=outcome.receipt_or_capture_id,
                    amount_paid=outcome.amount_paid,
                    paid_at=now,
                    metadata_={
                        "subscription_id": subscription.id,
                        "transaction_type": "subscription_payment",
                    },
                )
            ),
        )

    async def _write(
        self,
        store: TransactionStore | SubscriptionStore,
        outcome: CallbackOutcome,
        values: Dict[str, Any],
        log: logging.LoggerAdapter,
    ) -> bool:
        try:
            won = await store.update_if_status(
                outcome.provider, outcome.correlation_id, PENDING, values
            )
        except Exception as exc:
            await self._alert(log, "Terminal status write failed", exc)
            return False
        if not won:
            log.info("Lost the race for %s; another delivery already settled it", outcome.correlation_id)
        return won
