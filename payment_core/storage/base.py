"""
Ledger storage interface.

The payment service is the only writer. It needs atomic create (upsert by id)
and atomic field-level update per entity; nothing here spans multiple rows.
``record_refund`` is the one compound operation and must be atomic on its
own, so concurrent refunds cannot accumulate past the transaction amount.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

from payment_core.models.enums import PaymentStatus, can_transition
from payment_core.models.payment import PaymentIntent, PaymentTransaction, utcnow


def merge_replayed_transaction(existing: PaymentTransaction, incoming: PaymentTransaction) -> PaymentTransaction:
    """
    Fold a re-created transaction into the stored one.

    Replays (idempotent retries, repeated confirmations) hand back a fresh
    provider view of a row the ledger already owns. Refund fields and
    ``created_at`` always stay as stored; the status only moves along a legal
    transition, and never to ``refunded``, which only ``record_refund`` sets.
    """
    status = existing.status
    if (
        incoming.status != existing.status
        and incoming.status != PaymentStatus.REFUNDED
        and can_transition(existing.status, incoming.status)
    ):
        status = incoming.status

    return replace(
        incoming,
        status=status,
        payment_intent_id=incoming.payment_intent_id or existing.payment_intent_id,
        external_reference_id=incoming.external_reference_id or existing.external_reference_id,
        metadata=dict(incoming.metadata or existing.metadata),
        processed_at=existing.processed_at or incoming.processed_at,
        refund_amount=existing.refund_amount,
        refunded_at=existing.refunded_at,
        error_message=existing.error_message if status == existing.status else incoming.error_message,
        created_at=existing.created_at,
        updated_at=utcnow(),
    )


class PaymentStore(ABC):
    """Persistence for transactions, intents and the audit trail."""

    # Transactions

    @abstractmethod
    async def create_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """
        Insert, or merge into the existing row with
        ``merge_replayed_transaction`` if one has this id.
        """
        ...

    @abstractmethod
    async def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> PaymentTransaction:
        """Apply ``patch`` to one transaction. Raises TransactionNotFoundError."""
        ...

    @abstractmethod
    async def find_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_transaction_by_intent(self, intent_id: str) -> Optional[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_transaction_by_reference(self, external_id: str) -> Optional[PaymentTransaction]:
        ...

    @abstractmethod
    async def list_transactions_by_customer(self, customer_id: str) -> list[PaymentTransaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_transactions_by_reservation(self, reservation_id: str) -> list[PaymentTransaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def record_refund(
        self,
        transaction_id: str,
        amount: int,
        refunded_at: datetime,
    ) -> PaymentTransaction:
        """
        Atomically add ``amount`` to ``refund_amount`` and mark the
        transaction refunded.

        Raises:
            TransactionNotFoundError: Unknown id.
            RefundLimitExceededError: The increment would exceed ``amount``.
        """
        ...

    # Intents

    @abstractmethod
    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """Insert, or update in place if an intent with this id exists."""
        ...

    @abstractmethod
    async def update_intent(self, intent_id: str, patch: dict[str, Any]) -> PaymentIntent:
        """Apply ``patch`` to one intent. Raises IntentNotFoundError."""
        ...

    @abstractmethod
    async def find_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        ...

    @abstractmethod
    async def find_intent_by_reference(self, external_id: str) -> Optional[PaymentIntent]:
        ...

    # Audit

    @abstractmethod
    async def record_event(
        self,
        action: str,
        transaction_id: Optional[str] = None,
        intent_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an immutable audit entry."""
        ...
