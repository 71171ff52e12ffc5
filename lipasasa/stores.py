"""Persistence collaborators backed by SQLAlchemy async sessions."""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import (
    Invoice,
    PaymentLink,
    Profile,
    ProviderCredential,
    Subscription,
    SubscriptionHistory,
    Transaction,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", Transaction, Subscription)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


class CredentialStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get_active(
        self, merchant_id: str, provider: str
    ) -> Optional[ProviderCredential]:
        """Return the merchant's active credential set for ``provider``, if any."""
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(ProviderCredential)
                .where(
                    ProviderCredential.merchant_id == merchant_id,
                    ProviderCredential.provider == provider,
                    ProviderCredential.is_active.is_(True),
                )
                .order_by(ProviderCredential.created_at.desc())
            )
            rows = result.scalars().all()

        if len(rows) > 1:
            logger.warning(
                "Merchant %s has %d active %s credential sets; using the newest",
                merchant_id,
                len(rows),
                provider,
            )
        return rows[0] if rows else None


class _CorrelatedStore(Generic[RecordT]):
    """Shared storage for records matched to provider callbacks by correlation id."""

    model: Type[RecordT]

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def insert(self, record: RecordT) -> RecordT:
        async with self._sessionmaker() as session:
            session.add(record)
            await session.commit()
        return record

    async def get(self, record_id: str, merchant_id: str | None = None) -> Optional[RecordT]:
        async with self._sessionmaker() as session:
            record = await session.get(self.model, record_id)
        if record is None:
            return None
        if merchant_id is not None and record.merchant_id != merchant_id:
            return None
        return record

    async def get_by_correlation_id(
        self, provider: str, correlation_id: str
    ) -> Optional[RecordT]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(self.model).where(
                    self.model.provider == provider,
                    self.model.correlation_id == correlation_id,
                )
            )
            return result.scalar_one_or_none()

    async def update_if_status(
        self,
        provider: str,
        correlation_id: str,
        expected: str,
        values: dict[str, Any],
    ) -> bool:
        """Apply ``values`` only while the record's status is still ``expected``.

        Returns True when this call performed the transition. A False return
        means another writer got there first (or the record vanished); it is
        not an error.
        """
        values = {**values, "updated_at": datetime.now(timezone.utc)}
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(self.model)
                .where(
                    self.model.provider == provider,
                    self.model.correlation_id == correlation_id,
                    self.model.status == expected,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def list_stale_pending(self, cutoff: datetime) -> Sequence[RecordT]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(self.model).where(
                    self.model.status == "pending",
                    self.model.created_at < cutoff,
                )
            )
            return result.scalars().all()


class TransactionStore(_CorrelatedStore[Transaction]):
    model = Transaction


class SubscriptionStore(_CorrelatedStore[Subscription]):
    model = Subscription


class SubscriptionHistoryStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def insert(self, entry: SubscriptionHistory) -> SubscriptionHistory:
        async with self._sessionmaker() as session:
            session.add(entry)
            await session.commit()
        return entry

    async def record_outcome(
        self, provider: str, transaction_ref: str, values: dict[str, Any]
    ) -> bool:
        """Close the pending history entry for one provider reference."""
        values = {**values, "updated_at": datetime.now(timezone.utc)}
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(SubscriptionHistory)
                .where(
                    SubscriptionHistory.provider == provider,
                    SubscriptionHistory.transaction_ref == transaction_ref,
                    SubscriptionHistory.status == "pending",
                )
                .values(**values)
            )
            await session.commit()
        return result.rowcount > 0

    async def list_for_merchant(self, merchant_id: str) -> Sequence[SubscriptionHistory]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(SubscriptionHistory)
                .where(SubscriptionHistory.merchant_id == merchant_id)
                .order_by(SubscriptionHistory.created_at)
            )
            return result.scalars().all()


class InvoiceStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get(self, invoice_id: str, merchant_id: str) -> Optional[Invoice]:
        async with self._sessionmaker() as session:
            invoice = await session.get(Invoice, invoice_id)
        if invoice is None or invoice.merchant_id != merchant_id:
            return None
        return invoice

    async def mark_paid(self, invoice_id: str) -> bool:
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id)
                .values(status="paid", updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
        return result.rowcount == 1


class ProfileStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get(self, merchant_id: str) -> Optional[Profile]:
        async with self._sessionmaker() as session:
            return await session.get(Profile, merchant_id)

    async def get_by_api_key(self, api_key: str) -> Optional[Profile]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(Profile).where(Profile.api_key_hash == hash_api_key(api_key))
            )
            return result.scalar_one_or_none()

    async def set_selected_plan(self, merchant_id: str, plan_name: str) -> bool:
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(Profile)
                .where(Profile.merchant_id == merchant_id)
                .values(selected_plan=plan_name, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
        return result.rowcount == 1


class PaymentLinkStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get_active_by_slug(self, slug: str) -> Optional[PaymentLink]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(PaymentLink).where(
                    PaymentLink.slug == slug, PaymentLink.status == "active"
                )
            )
            return result.scalar_one_or_none()
