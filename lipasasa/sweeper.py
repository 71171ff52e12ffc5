import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .logging_config import payment_logger
from .models import SubscriptionStatus, TransactionStatus
from .stores import SubscriptionHistoryStore, SubscriptionStore, TransactionStore

logger = logging.getLogger(__name__)

EXPIRED_CODE = "EXPIRED"
EXPIRED_DESC = "No provider callback received"


class PendingSweeper:
    """Fails records whose provider callback never arrived.

    Uses the same pending-only conditional update as callback reconciliation,
    so a callback that lands first always wins.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        subscriptions: SubscriptionStore,
        ttl_minutes: int,
        history: Optional[SubscriptionHistoryStore] = None,
    ):
        self._transactions = transactions
        self._subscriptions = subscriptions
        self._ttl = timedelta(minutes=ttl_minutes)
        self._history = history

    async def sweep(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - self._ttl
        expired = 0

        for transaction in await self._transactions.list_stale_pending(cutoff):
            log = payment_logger(logger, transaction.correlation_id, transaction.provider)
            if await self._transactions.update_if_status(
                transaction.provider,
                transaction.correlation_id,
                "pending",
                {
                    "status": TransactionStatus.FAILED.value,
                    "result_code": EXPIRED_CODE,
                    "result_desc": EXPIRED_DESC,
                },
            ):
                log.warning("Transaction %s expired without a callback", transaction.id)
                expired += 1

        for subscription in await self._subscriptions.list_stale_pending(cutoff):
            log = payment_logger(logger, subscription.correlation_id, subscription.provider)
            if await self._subscriptions.update_if_status(
                subscription.provider,
                subscription.correlation_id,
                "pending",
                {
                    "status": SubscriptionStatus.FAILED.value,
                    "failure_reason": EXPIRED_DESC,
                },
            ):
                log.warning("Subscription %s expired without a callback", subscription.id)
                expired += 1
                if self._history is not None:
                    try:
                        await self._history.record_outcome(
                            subscription.provider,
                            subscription.correlation_id,
                            {"status": "failed", "failure_reason": EXPIRED_DESC},
                        )
                    except Exception:
                        log.exception("Failed to close subscription history for %s", subscription.id)

        return expired

    async def run_forever(self, interval_seconds: float) -> None:
        logger.info("Pending sweeper running every %ss", interval_seconds)
        try:
            while True:
                try:
                    count = await self.sweep()
                    if count:
                        logger.info("Expired %d pending records", count)
                except Exception:
                    logger.exception("Pending sweep failed")
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Cancellation received; stopping pending sweeper...")
            raise
