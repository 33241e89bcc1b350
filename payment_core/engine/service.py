"""
Payment service — the orchestration core.

Every public payment operation goes through here. The flow for a request:

  1. Validation (amount bounds, required fields, currency, metadata)
  2. Provider selection through the registry (unknown/disabled → error)
  3. Provider call (gateway round trip, or local bookkeeping)
  4. Ledger write through the ``PaymentStore`` plus an audit entry

Guarantees:
  - Validation, unknown-provider and not-found conditions are raised.
  - Provider business failures are returned as ``success=False`` results,
    verbatim, so callers can tell "bad request" from "declined".
  - A ledger write that fails after a successful provider call raises
    ``PersistenceError``: the money may already have moved.
  - Confirming the same intent twice yields the same transaction.
  - Refunds never accumulate past the transaction amount.
  - Nothing is retried here. Retry policy belongs to the caller.

Confirmations and refunds are serialised per entity inside the process with
asyncio locks; the store's atomic updates cover concurrent processes.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Optional

from payment_core.config import Settings, settings as default_settings
from payment_core.engine.errors import (
    IntentNotFoundError,
    PaymentError,
    PersistenceError,
    RefundLimitExceededError,
    TransactionNotFoundError,
    ValidationError,
)
from payment_core.engine.validators import sanitize_metadata, validate_payment_request, validate_refund
from payment_core.models.enums import TERMINAL_STATUSES, PaymentStatus, can_transition
from payment_core.models.payment import PaymentIntent, PaymentTransaction, utcnow
from payment_core.providers.base import (
    PaymentProvider,
    ProcessPaymentRequest,
    ProcessPaymentResult,
    RefundRequest,
    RefundResult,
)
from payment_core.providers.manual import ORIGINAL_TRANSACTION_KEY
from payment_core.providers.registry import ProviderRegistry
from payment_core.storage.base import PaymentStore

logger = logging.getLogger("payment_core.service")

GATEWAY_EVENT_STATUSES: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
}


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass
class _EntityLock:
    """A per-entity lock, dropped once nobody holds or waits on it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class PaymentService:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: PaymentStore,
        config: Optional[Settings] = None,
    ):
        self._registry = registry
        self._store = store
        self._config = config or default_settings
        self._locks: dict[str, _EntityLock] = {}

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def process_payment(self, request: ProcessPaymentRequest) -> ProcessPaymentResult:
        """
        Charge or record a payment in one step.

        Raises:
            ValidationError: The request is malformed or out of bounds.
            UnsupportedProviderError: The provider is unknown or disabled.
            PersistenceError: The provider succeeded but the ledger write failed.
        """
        start = time.monotonic()
        provider = self._resolve(request)
        request = replace(request, metadata=sanitize_metadata(request.metadata))

        logger.info(
            "Processing payment: provider=%s amount=%d customer=%s reservation=%s",
            provider.name,
            request.amount,
            request.customer_id,
            request.reservation_id,
        )

        try:
            result = await provider.process_payment(request)
        except Exception:
            logger.exception("Provider %s raised during process_payment", provider.name)
            raise

        if result.success and result.transaction:
            stored = await self._persist_transaction(result.transaction, "payment_processed")
            result = replace(result, transaction=stored)
            logger.info(
                "Payment %s processed: provider=%s amount=%d status=%s duration_ms=%d",
                result.transaction.id,
                provider.name,
                request.amount,
                result.transaction.status.value,
                _elapsed_ms(start),
            )
        else:
            logger.warning(
                "Payment failed: provider=%s amount=%d error=%s duration_ms=%d",
                provider.name,
                request.amount,
                result.error,
                _elapsed_ms(start),
            )
            await self._store.record_event("payment_failed", details={
                "provider": provider.name,
                "reservation_id": request.reservation_id,
                "customer_id": request.customer_id,
                "amount": request.amount,
                "error": result.error,
                "error_code": result.error_code,
            })

        return result

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def create_payment_intent(self, request: ProcessPaymentRequest) -> PaymentIntent:
        """
        Create an intent for client-driven confirmation.

        The intent is stored whatever the provider made of it, so failed
        attempts stay queryable.
        """
        provider = self._resolve(request)
        request = replace(request, metadata=sanitize_metadata(request.metadata))

        intent = await provider.create_payment_intent(request)
        try:
            stored = await self._store.create_intent(intent)
        except PaymentError:
            raise
        except Exception as e:
            logger.critical("Failed to store payment intent %s: %s", intent.id, e)
            raise PersistenceError(f"Failed to store payment intent {intent.id}: {e}") from e

        await self._store.record_event("intent_created", intent_id=stored.id, details={
            "provider": provider.name,
            "amount": stored.amount,
            "status": stored.status.value,
            "external_reference_id": stored.external_reference_id,
            "error": stored.error_message,
        })
        return stored

    async def confirm_payment_intent(self, intent_id: str) -> ProcessPaymentResult:
        """
        Confirm a stored intent through the provider that created it.

        Idempotent: an intent that is already completed returns its existing
        transaction instead of producing a second one.

        Raises:
            IntentNotFoundError: Unknown intent id.
            UnsupportedProviderError: The intent's provider has since been disabled.
            PersistenceError: The provider confirmed but the ledger write failed.
        """
        async with self._entity_lock(f"intent:{intent_id}"):
            intent = await self._store.find_intent(intent_id)
            if intent is None:
                logger.error("Payment intent %s not found", intent_id)
                raise IntentNotFoundError(intent_id)

            if intent.status == PaymentStatus.COMPLETED:
                existing = await self._store.find_transaction_by_intent(intent_id)
                if existing is not None:
                    logger.info("Intent %s already confirmed as %s", intent_id, existing.id)
                    return ProcessPaymentResult(success=True, transaction=existing)
            elif intent.status in TERMINAL_STATUSES:
                return ProcessPaymentResult(
                    success=False,
                    error=f"Payment intent {intent_id} is {intent.status.value}",
                    error_code="invalid_state",
                )

            if not intent.external_reference_id:
                return ProcessPaymentResult(
                    success=False,
                    error=f"Payment intent {intent_id} has no provider reference",
                    error_code="invalid_state",
                )

            provider = self._registry.get(intent.provider)
            result = await provider.confirm_payment_intent(intent.external_reference_id)

            if not (result.success and result.transaction):
                patch: dict[str, Any] = {"error_message": result.error}
                if not result.retryable and can_transition(intent.status, PaymentStatus.FAILED):
                    patch["status"] = PaymentStatus.FAILED
                await self._store.update_intent(intent_id, patch)
                await self._store.record_event("intent_confirmation_failed", intent_id=intent_id, details={
                    "provider": provider.name,
                    "error": result.error,
                    "error_code": result.error_code,
                    "retryable": result.retryable,
                })
                return result

            transaction = replace(result.transaction, payment_intent_id=intent.id)
            stored = await self._persist_transaction(transaction, "intent_confirmed", intent_id=intent.id)

            intent_patch: dict[str, Any] = {"error_message": None}
            if can_transition(intent.status, transaction.status):
                intent_patch["status"] = transaction.status
            if transaction.status == PaymentStatus.COMPLETED:
                intent_patch["processed_at"] = transaction.processed_at or utcnow()
            try:
                await self._store.update_intent(intent_id, intent_patch)
            except Exception as e:
                logger.critical("Intent %s confirmed but its status could not be updated: %s", intent_id, e)
                raise PersistenceError(
                    f"Intent {intent_id} confirmed but its status could not be updated: {e}",
                    transaction=stored,
                ) from e

            return replace(result, transaction=stored)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        """
        Refund (part of) a stored transaction.

        The amount defaults to whatever has not been refunded yet.

        Raises:
            TransactionNotFoundError: Unknown transaction id.
            ValidationError: Not refundable, or amount out of range.
            UnsupportedProviderError: The transaction's provider has been disabled.
            PersistenceError: The provider refunded but the ledger rejected it.
        """
        start = time.monotonic()
        async with self._entity_lock(f"txn:{request.transaction_id}"):
            transaction = await self._store.find_transaction(request.transaction_id)
            if transaction is None:
                logger.error("Transaction %s not found", request.transaction_id)
                raise TransactionNotFoundError(request.transaction_id)

            amount = request.amount if request.amount is not None else transaction.remaining_refundable
            validation = validate_refund(transaction, amount)
            if not validation.valid:
                logger.error("Refund validation failed for %s: %s", transaction.id, validation.errors)
                raise ValidationError(validation.errors)

            provider = self._registry.get(transaction.provider)
            provider_request = replace(
                request,
                amount=amount,
                provider_payment_id=request.provider_payment_id or transaction.external_reference_id,
                metadata={
                    **transaction.metadata,
                    **sanitize_metadata(request.metadata),
                    ORIGINAL_TRANSACTION_KEY: transaction.id,
                },
            )

            logger.info(
                "Refunding transaction %s: provider=%s amount=%d reason=%s",
                transaction.id,
                provider.name,
                amount,
                request.reason,
            )
            result = await provider.refund_payment(provider_request)

            if not result.success:
                logger.warning(
                    "Refund failed for %s: error=%s duration_ms=%d",
                    transaction.id,
                    result.error,
                    _elapsed_ms(start),
                )
                await self._store.record_event("refund_failed", transaction_id=transaction.id, details={
                    "provider": provider.name,
                    "amount": amount,
                    "error": result.error,
                    "error_code": result.error_code,
                })
                return result

            refunded = result.refund_amount if result.refund_amount is not None else amount
            try:
                updated = await self._store.record_refund(transaction.id, refunded, utcnow())
            except RefundLimitExceededError as e:
                logger.critical("Provider refunded %d on %s but the ledger rejected it: %s", refunded, transaction.id, e)
                raise PersistenceError(str(e), transaction=transaction, refund_amount=refunded) from e
            except PaymentError:
                raise
            except Exception as e:
                logger.critical("Provider refunded %d on %s but the ledger write failed: %s", refunded, transaction.id, e)
                raise PersistenceError(
                    f"Refund of {refunded} on {transaction.id} could not be recorded: {e}",
                    transaction=transaction,
                    refund_amount=refunded,
                ) from e

            await self._store.record_event("refund_recorded", transaction_id=transaction.id, details={
                "provider": provider.name,
                "amount": refunded,
                "refund_id": result.refund_id,
                "total_refunded": updated.refund_amount,
                "reason": request.reason,
            })
            logger.info(
                "Refund of %d recorded on %s (total %d/%d) duration_ms=%d",
                refunded,
                transaction.id,
                updated.refund_amount or 0,
                updated.amount,
                _elapsed_ms(start),
            )

            return RefundResult(
                success=True,
                refund_amount=refunded,
                transaction=updated,
                refund_id=result.refund_id,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_payment_status(self, transaction_id: str) -> PaymentTransaction:
        """
        Latest view of a stored transaction.

        Asks the owning provider and persists any status it reports that is a
        legal move from the stored one. Refund fields always come from the
        ledger. If the provider has no record, the ledger copy is returned.
        """
        stored = await self._store.find_transaction(transaction_id)
        if stored is None:
            raise TransactionNotFoundError(transaction_id)

        provider = self._registry.get(stored.provider)
        latest = await provider.get_payment_status(stored.external_reference_id or stored.id)
        if latest is None:
            logger.warning("Provider %s has no record of %s; serving ledger copy", provider.name, stored.id)
            return stored

        if (
            latest.status != stored.status
            and latest.status != PaymentStatus.REFUNDED
            and can_transition(stored.status, latest.status)
        ):
            patch: dict[str, Any] = {"status": latest.status}
            if latest.status == PaymentStatus.COMPLETED and stored.processed_at is None:
                patch["processed_at"] = latest.processed_at or utcnow()
            stored = await self._store.update_transaction(stored.id, patch)
            await self._store.record_event("status_reconciled", transaction_id=stored.id, details={
                "provider": provider.name,
                "status": latest.status.value,
            })

        return stored

    async def get_payment_history(self, customer_id: str) -> list[PaymentTransaction]:
        return await self._store.list_transactions_by_customer(customer_id)

    async def get_payment_history_by_reservation(self, reservation_id: str) -> list[PaymentTransaction]:
        return await self._store.list_transactions_by_reservation(reservation_id)

    # ------------------------------------------------------------------
    # Gateway notifications
    # ------------------------------------------------------------------

    async def handle_gateway_event(
        self,
        event_type: str,
        external_id: str,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Apply an asynchronous gateway outcome to the ledger.

        Only legal status transitions are applied, so a late or duplicated
        notification can never move an entity backwards. Returns False for
        event types we do not act on.
        """
        target = GATEWAY_EVENT_STATUSES.get(event_type)
        if target is None:
            logger.info("Unhandled gateway event type %s", event_type)
            return False

        intent = await self._store.find_intent_by_reference(external_id)
        if intent is not None:
            async with self._entity_lock(f"intent:{intent.id}"):
                intent = await self._store.find_intent(intent.id)
                if intent is not None and can_transition(intent.status, target):
                    patch: dict[str, Any] = {"status": target}
                    if target == PaymentStatus.COMPLETED:
                        patch["processed_at"] = utcnow()
                    if target == PaymentStatus.FAILED:
                        patch["error_message"] = error_message or "Payment failed"
                    await self._store.update_intent(intent.id, patch)

        transaction = await self._store.find_transaction_by_reference(external_id)
        if transaction is not None:
            async with self._entity_lock(f"txn:{transaction.id}"):
                transaction = await self._store.find_transaction(transaction.id)
                if transaction is not None and can_transition(transaction.status, target):
                    patch = {"status": target}
                    if target == PaymentStatus.COMPLETED and transaction.processed_at is None:
                        patch["processed_at"] = utcnow()
                    if target == PaymentStatus.FAILED:
                        patch["error_message"] = error_message or "Payment failed"
                    await self._store.update_transaction(transaction.id, patch)

        await self._store.record_event(
            "gateway_event",
            transaction_id=transaction.id if transaction else None,
            intent_id=intent.id if intent else None,
            details={"type": event_type, "external_id": external_id, "error": error_message},
        )
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, request: ProcessPaymentRequest) -> PaymentProvider:
        validation = validate_payment_request(
            request,
            min_amount=self._config.payment_min_amount,
            max_amount=self._config.payment_max_amount,
            currency=self._config.payment_currency,
        )
        if not validation.valid:
            logger.error("Payment validation failed: %s", ", ".join(validation.errors))
            raise ValidationError(validation.errors)

        provider = self._registry.get(request.provider)
        if not provider.supports(request.payment_method):
            raise ValidationError([
                f"Payment method {request.payment_method} is not supported by provider {provider.name}"
            ])
        return provider

    async def _persist_transaction(
        self,
        transaction: PaymentTransaction,
        action: str,
        intent_id: Optional[str] = None,
    ) -> PaymentTransaction:
        try:
            stored = await self._store.create_transaction(transaction)
            await self._store.record_event(action, transaction_id=stored.id, intent_id=intent_id, details={
                "provider": stored.provider,
                "amount": stored.amount,
                "status": stored.status.value,
                "external_reference_id": stored.external_reference_id,
            })
        except PaymentError:
            raise
        except Exception as e:
            logger.critical(
                "Provider %s succeeded but transaction %s could not be stored: %s",
                transaction.provider,
                transaction.id,
                e,
            )
            raise PersistenceError(
                f"Transaction {transaction.id} succeeded at {transaction.provider} but could not be stored: {e}",
                transaction=transaction,
            ) from e
        return stored

    @asynccontextmanager
    async def _entity_lock(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _EntityLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(key, None)
