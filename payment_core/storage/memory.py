"""
In-process ledger store.

Used by the test suite and by demo deployments. All mutations happen under a
single asyncio.Lock, which gives the same atomicity the SQL store gets from
conditional UPDATEs. Stored entities are copied on the way in and out so
callers can never mutate the ledger behind the store's back.
"""

import asyncio
import itertools
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Optional, TypeVar

from payment_core.audit.logger import emit
from payment_core.engine.errors import (
    IntentNotFoundError,
    RefundLimitExceededError,
    TransactionNotFoundError,
)
from payment_core.models.enums import PaymentStatus
from payment_core.models.payment import PaymentIntent, PaymentTransaction, utcnow
from payment_core.storage.base import PaymentStore, merge_replayed_transaction

E = TypeVar("E", PaymentTransaction, PaymentIntent)


def _apply_patch(entity: E, patch: dict[str, Any]) -> E:
    allowed = {f.name for f in fields(entity)} - {"id", "created_at"}
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Cannot patch fields: {', '.join(sorted(unknown))}")
    return replace(entity, **patch, updated_at=utcnow())


class InMemoryPaymentStore(PaymentStore):
    def __init__(self) -> None:
        self._transactions: dict[str, PaymentTransaction] = {}
        self._intents: dict[str, PaymentIntent] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self.events: list[dict[str, Any]] = []

    # Transactions

    async def create_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        async with self._lock:
            existing = self._transactions.get(transaction.id)
            if existing is not None:
                stored = merge_replayed_transaction(existing, transaction)
            else:
                stored = replace(transaction, metadata=dict(transaction.metadata))
                self._order[transaction.id] = next(self._seq)
            self._transactions[transaction.id] = stored
            return replace(stored)

    async def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> PaymentTransaction:
        async with self._lock:
            existing = self._transactions.get(transaction_id)
            if existing is None:
                raise TransactionNotFoundError(transaction_id)
            updated = _apply_patch(existing, patch)
            self._transactions[transaction_id] = updated
            return replace(updated)

    async def find_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        found = self._transactions.get(transaction_id)
        return replace(found) if found else None

    async def find_transaction_by_intent(self, intent_id: str) -> Optional[PaymentTransaction]:
        for tx in self._newest_first(self._transactions.values()):
            if tx.payment_intent_id == intent_id:
                return replace(tx)
        return None

    async def find_transaction_by_reference(self, external_id: str) -> Optional[PaymentTransaction]:
        for tx in self._newest_first(self._transactions.values()):
            if tx.external_reference_id == external_id:
                return replace(tx)
        return None

    async def list_transactions_by_customer(self, customer_id: str) -> list[PaymentTransaction]:
        return [
            replace(tx)
            for tx in self._newest_first(self._transactions.values())
            if tx.customer_id == customer_id
        ]

    async def list_transactions_by_reservation(self, reservation_id: str) -> list[PaymentTransaction]:
        return [
            replace(tx)
            for tx in self._newest_first(self._transactions.values())
            if tx.reservation_id == reservation_id
        ]

    async def record_refund(
        self,
        transaction_id: str,
        amount: int,
        refunded_at: datetime,
    ) -> PaymentTransaction:
        async with self._lock:
            existing = self._transactions.get(transaction_id)
            if existing is None:
                raise TransactionNotFoundError(transaction_id)
            if amount > existing.remaining_refundable:
                raise RefundLimitExceededError(transaction_id, amount, existing.remaining_refundable)
            updated = _apply_patch(existing, {
                "status": PaymentStatus.REFUNDED,
                "refund_amount": (existing.refund_amount or 0) + amount,
                "refunded_at": refunded_at,
            })
            self._transactions[transaction_id] = updated
            return replace(updated)

    # Intents

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        async with self._lock:
            existing = self._intents.get(intent.id)
            stored = replace(intent, metadata=dict(intent.metadata))
            if existing is not None:
                stored = replace(stored, created_at=existing.created_at, updated_at=utcnow())
            self._intents[intent.id] = stored
            return replace(stored)

    async def update_intent(self, intent_id: str, patch: dict[str, Any]) -> PaymentIntent:
        async with self._lock:
            existing = self._intents.get(intent_id)
            if existing is None:
                raise IntentNotFoundError(intent_id)
            updated = _apply_patch(existing, patch)
            self._intents[intent_id] = updated
            return replace(updated)

    async def find_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        found = self._intents.get(intent_id)
        return replace(found) if found else None

    async def find_intent_by_reference(self, external_id: str) -> Optional[PaymentIntent]:
        for intent in self._intents.values():
            if intent.external_reference_id == external_id:
                return replace(intent)
        return None

    # Audit

    async def record_event(
        self,
        action: str,
        transaction_id: Optional[str] = None,
        intent_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.events.append({
            "action": action,
            "transaction_id": transaction_id,
            "intent_id": intent_id,
            "details": dict(details) if details else None,
            "timestamp": utcnow(),
        })
        emit(action, transaction_id=transaction_id, intent_id=intent_id, details=details)

    def _newest_first(self, transactions):
        return sorted(
            transactions,
            key=lambda tx: (tx.created_at, self._order.get(tx.id, 0)),
            reverse=True,
        )
