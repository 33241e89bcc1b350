"""
SQLAlchemy-backed ledger store.

Each operation runs in its own session and commits before returning, so every
create/update is atomic on its own. Refunds use a single conditional UPDATE
(``refund_amount + :amount <= amount``), which serialises concurrent refunds
in the database without explicit row locks.
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_core.audit.logger import log_event
from payment_core.engine.errors import (
    IntentNotFoundError,
    RefundLimitExceededError,
    TransactionNotFoundError,
)
from payment_core.models.enums import PaymentMethod, PaymentStatus
from payment_core.models.ledger import PaymentIntentRecord, PaymentTransactionRecord
from payment_core.models.payment import PaymentIntent, PaymentTransaction, utcnow
from payment_core.storage.base import PaymentStore, merge_replayed_transaction

_TRANSACTION_COLUMNS = (
    "reservation_id", "customer_id", "amount", "currency", "provider",
    "payment_method", "status", "payment_intent_id", "external_reference_id",
    "metadata", "processed_at", "refunded_at", "refund_amount", "error_message",
)
_INTENT_COLUMNS = (
    "external_reference_id", "provider", "amount", "currency", "status",
    "payment_method", "reservation_id", "customer_id", "metadata",
    "client_secret", "error_message", "processed_at",
)
# Only record_refund writes these once a row exists
_LEDGER_OWNED_COLUMNS = ("refund_amount", "refunded_at")


def _dump_value(key: str, value: Any) -> tuple[str, Any]:
    if key == "metadata":
        return "metadata_json", json.dumps(value or {})
    if key in ("status", "payment_method") and value is not None:
        return key, getattr(value, "value", value)
    return key, value


def _load_metadata(raw: Optional[str]) -> dict[str, str]:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}


def _to_transaction(row: PaymentTransactionRecord) -> PaymentTransaction:
    return PaymentTransaction(
        id=row.id,
        reservation_id=row.reservation_id,
        customer_id=row.customer_id,
        amount=row.amount,
        currency=row.currency,
        provider=row.provider,
        payment_method=PaymentMethod(row.payment_method),
        status=PaymentStatus(row.status),
        payment_intent_id=row.payment_intent_id,
        external_reference_id=row.external_reference_id,
        metadata=_load_metadata(row.metadata_json),
        processed_at=row.processed_at,
        refunded_at=row.refunded_at,
        refund_amount=row.refund_amount,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_intent(row: PaymentIntentRecord) -> PaymentIntent:
    return PaymentIntent(
        id=row.id,
        external_reference_id=row.external_reference_id,
        provider=row.provider,
        amount=row.amount,
        currency=row.currency,
        status=PaymentStatus(row.status),
        payment_method=PaymentMethod(row.payment_method),
        reservation_id=row.reservation_id,
        customer_id=row.customer_id,
        metadata=_load_metadata(row.metadata_json),
        client_secret=row.client_secret,
        error_message=row.error_message,
        processed_at=row.processed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlPaymentStore(PaymentStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # Transactions

    async def create_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        values = dict(
            _dump_value(key, getattr(transaction, key)) for key in _TRANSACTION_COLUMNS
        )
        async with self._session_factory() as session:
            row = await session.get(PaymentTransactionRecord, transaction.id)
            if row is None:
                row = PaymentTransactionRecord(
                    id=transaction.id,
                    created_at=transaction.created_at,
                    updated_at=transaction.updated_at,
                    **values,
                )
                session.add(row)
            else:
                merged = merge_replayed_transaction(_to_transaction(row), transaction)
                for key in _TRANSACTION_COLUMNS:
                    if key in _LEDGER_OWNED_COLUMNS:
                        continue
                    if key == "status" and merged.status.value == row.status:
                        continue
                    column, value = _dump_value(key, getattr(merged, key))
                    setattr(row, column, value)
            try:
                await session.commit()
            except IntegrityError:
                # Lost an insert race on the same id; the other writer's row stands.
                await session.rollback()
                row = await session.get(PaymentTransactionRecord, transaction.id)
            await session.refresh(row)
            return _to_transaction(row)

    async def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> PaymentTransaction:
        async with self._session_factory() as session:
            row = await session.get(PaymentTransactionRecord, transaction_id)
            if row is None:
                raise TransactionNotFoundError(transaction_id)
            for key, value in patch.items():
                if key not in _TRANSACTION_COLUMNS:
                    raise ValueError(f"Cannot patch field: {key}")
                column, dumped = _dump_value(key, value)
                setattr(row, column, dumped)
            await session.commit()
            await session.refresh(row)
            return _to_transaction(row)

    async def find_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        async with self._session_factory() as session:
            row = await session.get(PaymentTransactionRecord, transaction_id)
            return _to_transaction(row) if row else None

    async def find_transaction_by_intent(self, intent_id: str) -> Optional[PaymentTransaction]:
        return await self._first_transaction(PaymentTransactionRecord.payment_intent_id == intent_id)

    async def find_transaction_by_reference(self, external_id: str) -> Optional[PaymentTransaction]:
        return await self._first_transaction(PaymentTransactionRecord.external_reference_id == external_id)

    async def list_transactions_by_customer(self, customer_id: str) -> list[PaymentTransaction]:
        return await self._list_transactions(PaymentTransactionRecord.customer_id == customer_id)

    async def list_transactions_by_reservation(self, reservation_id: str) -> list[PaymentTransaction]:
        return await self._list_transactions(PaymentTransactionRecord.reservation_id == reservation_id)

    async def record_refund(
        self,
        transaction_id: str,
        amount: int,
        refunded_at: datetime,
    ) -> PaymentTransaction:
        refunded_so_far = func.coalesce(PaymentTransactionRecord.refund_amount, 0)
        stmt = (
            update(PaymentTransactionRecord)
            .where(
                PaymentTransactionRecord.id == transaction_id,
                refunded_so_far + amount <= PaymentTransactionRecord.amount,
            )
            .values(
                refund_amount=refunded_so_far + amount,
                status=PaymentStatus.REFUNDED.value,
                refunded_at=refunded_at,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            row = await session.get(PaymentTransactionRecord, transaction_id, populate_existing=True)
            if row is None:
                raise TransactionNotFoundError(transaction_id)
            if result.rowcount == 0:
                raise RefundLimitExceededError(
                    transaction_id, amount, row.amount - (row.refund_amount or 0)
                )
            return _to_transaction(row)

    # Intents

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        values = dict(_dump_value(key, getattr(intent, key)) for key in _INTENT_COLUMNS)
        async with self._session_factory() as session:
            row = await session.get(PaymentIntentRecord, intent.id)
            if row is None:
                row = PaymentIntentRecord(
                    id=intent.id,
                    created_at=intent.created_at,
                    updated_at=intent.updated_at,
                    **values,
                )
                session.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                row = await session.get(PaymentIntentRecord, intent.id)
            await session.refresh(row)
            return _to_intent(row)

    async def update_intent(self, intent_id: str, patch: dict[str, Any]) -> PaymentIntent:
        async with self._session_factory() as session:
            row = await session.get(PaymentIntentRecord, intent_id)
            if row is None:
                raise IntentNotFoundError(intent_id)
            for key, value in patch.items():
                if key not in _INTENT_COLUMNS:
                    raise ValueError(f"Cannot patch field: {key}")
                column, dumped = _dump_value(key, value)
                setattr(row, column, dumped)
            await session.commit()
            await session.refresh(row)
            return _to_intent(row)

    async def find_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        async with self._session_factory() as session:
            row = await session.get(PaymentIntentRecord, intent_id)
            return _to_intent(row) if row else None

    async def find_intent_by_reference(self, external_id: str) -> Optional[PaymentIntent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord)
                .where(PaymentIntentRecord.external_reference_id == external_id)
                .limit(1)
            )
            row = result.scalars().first()
            return _to_intent(row) if row else None

    # Audit

    async def record_event(
        self,
        action: str,
        transaction_id: Optional[str] = None,
        intent_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        async with self._session_factory() as session:
            await log_event(
                session, action,
                transaction_id=transaction_id,
                intent_id=intent_id,
                details=details,
            )
            await session.commit()

    async def _first_transaction(self, condition) -> Optional[PaymentTransaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentTransactionRecord)
                .where(condition)
                .order_by(PaymentTransactionRecord.created_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return _to_transaction(row) if row else None

    async def _list_transactions(self, condition) -> list[PaymentTransaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentTransactionRecord)
                .where(condition)
                .order_by(PaymentTransactionRecord.created_at.desc(), PaymentTransactionRecord.id.desc())
            )
            return [_to_transaction(row) for row in result.scalars().all()]
