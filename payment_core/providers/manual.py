"""
Manual (offline) payment provider.

Records cash, bank-transfer and card-recorded-after-the-fact payments with no
outbound network call. Everything completes synchronously:
  - process_payment immediately yields a completed transaction
  - create_payment_intent yields a pending intent under a generated reference
  - confirm_payment_intent completes that intent and links a transaction

When constructed with the service's ``PaymentStore`` every lookup reads the
store, so confirmations and status lookups see the current ledger and survive
restarts; the provider never writes to it. Without a store (tests, demos) it
keeps its own in-process bookkeeping of what it has issued.
"""

import logging
import uuid
from dataclasses import replace
from typing import Optional

from payment_core.config import settings
from payment_core.models.enums import PaymentMethod, PaymentStatus, ProviderName
from payment_core.models.payment import PaymentIntent, PaymentTransaction, new_id, utcnow
from payment_core.providers.base import (
    PaymentProvider,
    ProcessPaymentRequest,
    ProcessPaymentResult,
    RefundRequest,
    RefundResult,
)
from payment_core.storage.base import PaymentStore

logger = logging.getLogger("payment_core.providers.manual")

SUPPORTED_METHODS = [PaymentMethod.CARD, PaymentMethod.BANK_TRANSFER, PaymentMethod.CASH]

# Metadata key the service uses to link a refund to its original transaction
ORIGINAL_TRANSACTION_KEY = "original_transaction_id"

_IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c2b8e-3d4a-4f5e-9a7b-0c1d2e3f4a5b")


class ManualPaymentProvider(PaymentProvider):
    def __init__(
        self,
        store: Optional[PaymentStore] = None,
        allow_status_synthesis: Optional[bool] = None,
    ):
        self._store = store
        self._allow_status_synthesis = (
            allow_status_synthesis
            if allow_status_synthesis is not None
            else settings.manual_status_synthesis
        )
        self._intents: dict[str, PaymentIntent] = {}  # keyed by external reference
        self._transactions: dict[str, PaymentTransaction] = {}

    @property
    def name(self) -> str:
        return ProviderName.MANUAL.value

    @property
    def supported_methods(self) -> list[PaymentMethod]:
        return list(SUPPORTED_METHODS)

    def _build_transaction(self, request: ProcessPaymentRequest, **overrides) -> PaymentTransaction:
        now = utcnow()
        values = dict(
            id=new_id("txn_manual"),
            reservation_id=request.reservation_id,
            customer_id=request.customer_id,
            amount=request.amount,
            currency=request.currency,
            provider=self.name,
            payment_method=PaymentMethod(request.payment_method),
            status=PaymentStatus.COMPLETED,
            metadata=dict(request.metadata or {}),
            processed_at=now,
            created_at=now,
            updated_at=now,
        )
        values.update(overrides)
        return PaymentTransaction(**values)

    async def process_payment(self, request: ProcessPaymentRequest) -> ProcessPaymentResult:
        if request.idempotency_key:
            transaction_id = f"txn_manual_{uuid.uuid5(_IDEMPOTENCY_NAMESPACE, request.idempotency_key).hex}"
            existing = await self._find_transaction(transaction_id)
            if existing is not None:
                logger.info("Replaying idempotent manual payment %s", transaction_id)
                return ProcessPaymentResult(success=True, transaction=existing)
            transaction = self._build_transaction(request, id=transaction_id)
        else:
            transaction = self._build_transaction(request)

        self._remember_transaction(transaction)
        return ProcessPaymentResult(success=True, transaction=transaction)

    async def create_payment_intent(self, request: ProcessPaymentRequest) -> PaymentIntent:
        now = utcnow()
        intent = PaymentIntent(
            id=new_id("pi_manual"),
            external_reference_id=new_id("manual_intent"),
            provider=self.name,
            amount=request.amount,
            currency=request.currency,
            status=PaymentStatus.PENDING,
            payment_method=PaymentMethod(request.payment_method),
            reservation_id=request.reservation_id,
            customer_id=request.customer_id,
            metadata=dict(request.metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._remember_intent(intent)
        return intent

    async def confirm_payment_intent(self, external_id: str) -> ProcessPaymentResult:
        intent = await self._find_intent(external_id)
        if intent is None:
            return ProcessPaymentResult(
                success=False,
                error="Payment intent not found",
                error_code="not_found",
            )

        if intent.status == PaymentStatus.COMPLETED:
            existing = await self._find_transaction_for_intent(intent.id)
            if existing is not None:
                return ProcessPaymentResult(success=True, transaction=existing)

        request = ProcessPaymentRequest(
            reservation_id=intent.reservation_id,
            customer_id=intent.customer_id,
            amount=intent.amount,
            currency=intent.currency,
            payment_method=intent.payment_method,
            provider=self.name,
            metadata=intent.metadata,
        )
        transaction = self._build_transaction(request, payment_intent_id=intent.id)

        self._remember_transaction(transaction)
        self._remember_intent(replace(
            intent,
            status=PaymentStatus.COMPLETED,
            processed_at=transaction.processed_at,
            updated_at=utcnow(),
        ))
        return ProcessPaymentResult(success=True, transaction=transaction)

    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        refund_amount = request.amount or 0
        original_id = (request.metadata or {}).get(ORIGINAL_TRANSACTION_KEY)
        original = await self._find_transaction(original_id) if original_id else None
        now = utcnow()

        if original is not None:
            transaction = replace(
                original,
                id=request.transaction_id or original.id,
                status=PaymentStatus.REFUNDED,
                refund_amount=(original.refund_amount or 0) + refund_amount,
                refunded_at=now,
                updated_at=now,
            )
        else:
            # No link: still hand back a well-formed refunded record.
            transaction = PaymentTransaction(
                id=request.transaction_id or new_id("txn_manual"),
                reservation_id="",
                customer_id="",
                amount=refund_amount,
                currency=settings.payment_currency,
                provider=self.name,
                payment_method=PaymentMethod.CASH,
                status=PaymentStatus.REFUNDED,
                metadata=dict(request.metadata or {}),
                processed_at=now,
                refunded_at=now,
                refund_amount=refund_amount,
                created_at=now,
                updated_at=now,
            )

        self._remember_transaction(transaction)
        return RefundResult(
            success=True,
            refund_amount=refund_amount,
            transaction=transaction,
            refund_id=new_id("re_manual"),
        )

    async def get_payment_status(self, transaction_id: str) -> Optional[PaymentTransaction]:
        existing = await self._find_transaction(transaction_id)
        if existing is not None:
            return existing

        if not self._allow_status_synthesis:
            return None

        # Demo/offline mode only: fabricate a plausible completed record.
        logger.warning("Synthesizing completed status for unknown transaction %s", transaction_id)
        now = utcnow()
        return PaymentTransaction(
            id=transaction_id,
            reservation_id="",
            customer_id="",
            amount=0,
            currency=settings.payment_currency,
            provider=self.name,
            payment_method=PaymentMethod.CASH,
            status=PaymentStatus.COMPLETED,
            processed_at=now,
            created_at=now,
            updated_at=now,
        )

    def validate_config(self) -> bool:
        return True

    # With a store the ledger is the only source of truth and nothing is
    # cached; the dicts back the store-less mode used by tests and demos.

    def _remember_transaction(self, transaction: PaymentTransaction) -> None:
        if self._store is None:
            self._transactions[transaction.id] = transaction

    def _remember_intent(self, intent: PaymentIntent) -> None:
        if self._store is None:
            self._intents[intent.external_reference_id] = intent

    async def _find_intent(self, external_id: str) -> Optional[PaymentIntent]:
        if self._store is not None:
            return await self._store.find_intent_by_reference(external_id)
        return self._intents.get(external_id)

    async def _find_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        if self._store is not None:
            return await self._store.find_transaction(transaction_id)
        return self._transactions.get(transaction_id)

    async def _find_transaction_for_intent(self, intent_id: str) -> Optional[PaymentTransaction]:
        if self._store is not None:
            return await self._store.find_transaction_by_intent(intent_id)
        for transaction in self._transactions.values():
            if transaction.payment_intent_id == intent_id:
                return transaction
        return None
