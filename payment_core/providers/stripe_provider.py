"""
Stripe gateway provider.

Wraps Stripe's PaymentIntent API (create → confirm → capture, plus refund and
retrieve). The SDK is synchronous, so each call runs in a worker thread and is
bounded by ``gateway_timeout_seconds``; the SDK's own network retries are
disabled. Retrying is the caller's decision, since blindly repeating a charge
can double-bill.

Gateway failures (declines, rejected requests, connection errors, timeouts)
come back as ``success=False`` results carrying the raw gateway message. The
only exception this provider raises is ``ProviderConfigurationError`` at
construction time when the secret key is missing.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Optional

import stripe

from payment_core.config import settings
from payment_core.engine.errors import ProviderConfigurationError
from payment_core.models.enums import PaymentMethod, PaymentStatus, ProviderName
from payment_core.models.payment import PaymentIntent, PaymentTransaction, new_id, utcnow
from payment_core.providers.base import (
    PaymentProvider,
    ProcessPaymentRequest,
    ProcessPaymentResult,
    RefundRequest,
    RefundResult,
)

logger = logging.getLogger("payment_core.providers.stripe")

GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.COMPLETED,
    "processing": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "canceled": PaymentStatus.CANCELLED,
}

# Ledger ids of Stripe transactions are this prefix plus the PaymentIntent id
TRANSACTION_ID_PREFIX = "txn_"

STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def map_gateway_status(status: Optional[str]) -> PaymentStatus:
    """Map a Stripe PaymentIntent status; anything unrecognized fails closed."""
    return GATEWAY_STATUS_MAP.get(status or "", PaymentStatus.FAILED)


def _gateway_id_for(transaction_id: str) -> Optional[str]:
    """The PaymentIntent id behind one of our Stripe transaction ids, if it is one."""
    if transaction_id.startswith(TRANSACTION_ID_PREFIX + "pi_"):
        return transaction_id[len(TRANSACTION_ID_PREFIX):]
    return None


def _metadata(obj: Any) -> dict[str, str]:
    raw = getattr(obj, "metadata", None) or {}
    return {str(key): str(raw[key]) for key in raw.keys()}


class _GatewayFailure(Exception):
    """Internal carrier for a classified gateway error."""

    def __init__(self, message: str, code: str, retryable: bool):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class StripePaymentProvider(PaymentProvider):
    def __init__(
        self,
        secret_key: Optional[str],
        publishable_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Any = None,
    ):
        if not secret_key:
            raise ProviderConfigurationError("Stripe secret key is required")

        self._secret_key = secret_key
        self.publishable_key = publishable_key
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.gateway_timeout_seconds
        self._client = client if client is not None else stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=self._timeout),
            max_network_retries=0,
        )

    @property
    def name(self) -> str:
        return ProviderName.STRIPE.value

    @property
    def supported_methods(self) -> list[PaymentMethod]:
        return [PaymentMethod.CARD]

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call off the event loop, bounded and classified."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise _GatewayFailure(
                f"Gateway call timed out after {self._timeout:g}s",
                code="gateway_timeout",
                retryable=True,
            ) from None
        except stripe.CardError as e:
            raise _GatewayFailure(str(e), code="card_declined", retryable=False) from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise _GatewayFailure(str(e), code="gateway_error", retryable=True) from e
        except stripe.StripeError as e:
            raise _GatewayFailure(str(e), code="gateway_error", retryable=False) from e

    def _transaction_from_intent(
        self,
        gateway_intent: Any,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        fallback_metadata: Optional[dict] = None,
    ) -> PaymentTransaction:
        metadata = _metadata(gateway_intent) or dict(fallback_metadata or {})
        status = map_gateway_status(gateway_intent.status)
        now = utcnow()
        return PaymentTransaction(
            # Derived from the gateway id so replays upsert the same ledger row
            id=f"{TRANSACTION_ID_PREFIX}{gateway_intent.id}",
            reservation_id=metadata.get("reservation_id", ""),
            customer_id=metadata.get("customer_id", ""),
            amount=gateway_intent.amount,
            currency=gateway_intent.currency,
            provider=self.name,
            payment_method=payment_method,
            status=status,
            payment_intent_id=metadata.get("payment_intent_id"),
            external_reference_id=gateway_intent.id,
            metadata=metadata,
            processed_at=now if status == PaymentStatus.COMPLETED else None,
            created_at=now,
            updated_at=now,
        )

    def _payment_result(self, gateway_intent: Any, transaction: PaymentTransaction) -> ProcessPaymentResult:
        if transaction.status == PaymentStatus.FAILED:
            return ProcessPaymentResult(
                success=False,
                transaction=transaction,
                error=f"Unexpected gateway status: {gateway_intent.status}",
                error_code="gateway_error",
            )
        requires_action = transaction.status == PaymentStatus.PENDING
        return ProcessPaymentResult(
            success=True,
            transaction=transaction,
            requires_action=requires_action,
            client_secret=getattr(gateway_intent, "client_secret", None) if requires_action else None,
        )

    async def process_payment(self, request: ProcessPaymentRequest) -> ProcessPaymentResult:
        metadata = {
            **(request.metadata or {}),
            "reservation_id": request.reservation_id,
            "customer_id": request.customer_id,
        }
        params: dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency,
            "confirm": True,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if metadata.get("payment_method_id"):
            params["payment_method"] = metadata["payment_method_id"]
        options = {"idempotency_key": request.idempotency_key} if request.idempotency_key else {}

        try:
            gateway_intent = await self._call(
                self._client.payment_intents.create, params=params, options=options
            )
        except _GatewayFailure as e:
            logger.warning("Stripe payment failed (%s): %s", e.code, e)
            return ProcessPaymentResult(success=False, error=str(e), error_code=e.code, retryable=e.retryable)

        transaction = self._transaction_from_intent(
            gateway_intent, PaymentMethod(request.payment_method), metadata
        )
        return self._payment_result(gateway_intent, transaction)

    async def create_payment_intent(self, request: ProcessPaymentRequest) -> PaymentIntent:
        intent_id = new_id("intent")
        metadata = dict(request.metadata or {})
        params = {
            "amount": request.amount,
            "currency": request.currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                **metadata,
                "reservation_id": request.reservation_id,
                "customer_id": request.customer_id,
                "payment_intent_id": intent_id,
            },
        }
        options = {"idempotency_key": request.idempotency_key} if request.idempotency_key else {}

        now = utcnow()
        intent = PaymentIntent(
            id=intent_id,
            provider=self.name,
            amount=request.amount,
            currency=request.currency,
            status=PaymentStatus.PENDING,
            payment_method=PaymentMethod(request.payment_method),
            reservation_id=request.reservation_id,
            customer_id=request.customer_id,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

        try:
            gateway_intent = await self._call(
                self._client.payment_intents.create, params=params, options=options
            )
        except _GatewayFailure as e:
            logger.warning("Stripe intent creation failed (%s): %s", e.code, e)
            return replace(intent, status=PaymentStatus.FAILED, error_message=str(e))

        return replace(
            intent,
            external_reference_id=gateway_intent.id,
            status=map_gateway_status(gateway_intent.status),
            client_secret=getattr(gateway_intent, "client_secret", None),
        )

    async def confirm_payment_intent(self, external_id: str) -> ProcessPaymentResult:
        try:
            gateway_intent = await self._call(self._client.payment_intents.confirm, external_id)
        except _GatewayFailure as e:
            logger.warning("Stripe confirmation of %s failed (%s): %s", external_id, e.code, e)
            return ProcessPaymentResult(success=False, error=str(e), error_code=e.code, retryable=e.retryable)

        transaction = self._transaction_from_intent(gateway_intent)
        return self._payment_result(gateway_intent, transaction)

    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        payment_id = request.provider_payment_id or _gateway_id_for(request.transaction_id)
        if not payment_id:
            return RefundResult(
                success=False,
                error=f"Unable to resolve gateway payment for transaction {request.transaction_id}",
                error_code="unresolved_payment",
            )

        params: dict[str, Any] = {
            "payment_intent": payment_id,
            "reason": request.reason if request.reason in STRIPE_REFUND_REASONS else "requested_by_customer",
            "metadata": {"transaction_id": request.transaction_id},
        }
        if request.amount is not None:
            params["amount"] = request.amount
        if request.reason and request.reason not in STRIPE_REFUND_REASONS:
            params["metadata"]["reason"] = request.reason

        try:
            refund = await self._call(self._client.refunds.create, params=params)
        except _GatewayFailure as e:
            logger.warning("Stripe refund for %s failed (%s): %s", payment_id, e.code, e)
            return RefundResult(success=False, error=str(e), error_code=e.code, retryable=e.retryable)

        if refund.status in ("failed", "canceled"):
            return RefundResult(
                success=False,
                refund_id=refund.id,
                error=f"Gateway refund {refund.id} {refund.status}",
                error_code="gateway_error",
            )

        # Only the refund itself is known here; the ledger row carries the rest.
        now = utcnow()
        transaction = PaymentTransaction(
            id=request.transaction_id,
            reservation_id="",
            customer_id="",
            amount=refund.amount,
            currency=refund.currency,
            provider=self.name,
            payment_method=PaymentMethod.CARD,
            status=PaymentStatus.REFUNDED,
            external_reference_id=payment_id,
            refunded_at=now,
            refund_amount=refund.amount,
            created_at=now,
            updated_at=now,
        )

        return RefundResult(
            success=True,
            refund_amount=refund.amount,
            transaction=transaction,
            refund_id=refund.id,
        )

    async def get_payment_status(self, transaction_id: str) -> Optional[PaymentTransaction]:
        try:
            gateway_intent = await self._call(self._client.payment_intents.retrieve, transaction_id)
        except _GatewayFailure as e:
            logger.warning("Stripe status lookup for %s failed (%s): %s", transaction_id, e.code, e)
            return None
        return self._transaction_from_intent(gateway_intent)

    def validate_config(self) -> bool:
        return bool(self._secret_key) and self._client is not None
