"""Request/response bodies for the payment HTTP API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from payment_core.models.payment import PaymentIntent, PaymentTransaction
from payment_core.providers.base import ProcessPaymentResult, RefundResult


class PaymentRequestBody(BaseModel):
    reservation_id: str
    customer_id: str
    amount: int
    currency: str
    payment_method: str
    provider: str
    metadata: Optional[dict] = None
    idempotency_key: Optional[str] = None


class RefundRequestBody(BaseModel):
    transaction_id: str
    amount: Optional[int] = None
    reason: Optional[str] = None
    provider_payment_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class TransactionDetail(BaseModel):
    id: str
    reservation_id: str
    customer_id: str
    amount: int
    currency: str
    provider: str
    payment_method: str
    status: str
    payment_intent_id: Optional[str]
    external_reference_id: Optional[str]
    metadata: dict[str, str]
    processed_at: Optional[datetime]
    refunded_at: Optional[datetime]
    refund_amount: Optional[int]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime


class IntentDetail(BaseModel):
    id: str
    external_reference_id: Optional[str]
    provider: str
    amount: int
    currency: str
    status: str
    payment_method: str
    reservation_id: str
    customer_id: str
    metadata: dict[str, str]
    client_secret: Optional[str]
    error_message: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class PaymentResultBody(BaseModel):
    success: bool
    transaction: Optional[TransactionDetail] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    requires_action: bool = False
    client_secret: Optional[str] = None


class RefundResultBody(BaseModel):
    success: bool
    refund_amount: Optional[int] = None
    transaction: Optional[TransactionDetail] = None
    refund_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


class ProviderStatus(BaseModel):
    name: str
    enabled: bool
    supported_methods: list[str] = []
    disabled_reason: Optional[str] = None


def transaction_to_detail(tx: PaymentTransaction) -> TransactionDetail:
    return TransactionDetail(
        id=tx.id,
        reservation_id=tx.reservation_id,
        customer_id=tx.customer_id,
        amount=tx.amount,
        currency=tx.currency,
        provider=tx.provider,
        payment_method=tx.payment_method.value,
        status=tx.status.value,
        payment_intent_id=tx.payment_intent_id,
        external_reference_id=tx.external_reference_id,
        metadata=tx.metadata,
        processed_at=tx.processed_at,
        refunded_at=tx.refunded_at,
        refund_amount=tx.refund_amount,
        error_message=tx.error_message,
        created_at=tx.created_at,
        updated_at=tx.updated_at,
    )


def intent_to_detail(intent: PaymentIntent) -> IntentDetail:
    return IntentDetail(
        id=intent.id,
        external_reference_id=intent.external_reference_id,
        provider=intent.provider,
        amount=intent.amount,
        currency=intent.currency,
        status=intent.status.value,
        payment_method=intent.payment_method.value,
        reservation_id=intent.reservation_id,
        customer_id=intent.customer_id,
        metadata=intent.metadata,
        client_secret=intent.client_secret,
        error_message=intent.error_message,
        processed_at=intent.processed_at,
        created_at=intent.created_at,
        updated_at=intent.updated_at,
    )


def payment_result_to_body(result: ProcessPaymentResult) -> PaymentResultBody:
    return PaymentResultBody(
        success=result.success,
        transaction=transaction_to_detail(result.transaction) if result.transaction else None,
        error=result.error,
        error_code=result.error_code,
        retryable=result.retryable,
        requires_action=result.requires_action,
        client_secret=result.client_secret,
    )


def refund_result_to_body(result: RefundResult) -> RefundResultBody:
    return RefundResultBody(
        success=result.success,
        refund_amount=result.refund_amount,
        transaction=transaction_to_detail(result.transaction) if result.transaction else None,
        refund_id=result.refund_id,
        error=result.error,
        error_code=result.error_code,
        retryable=result.retryable,
    )
