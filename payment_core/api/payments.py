"""
Payment endpoints.

POST /payments                        — Process a payment in one step.
GET  /payments                        — History by customer_id or reservation_id.
GET  /payments/{id}                   — Latest status of a transaction.
POST /payments/intents                — Create an intent for client confirmation.
POST /payments/intents/{id}/confirm   — Confirm an intent.
POST /payments/refunds                — Refund (part of) a transaction.
GET  /providers                       — Provider enablement.

Provider business failures come back with ``success: false`` in the body
(402 for card declines, 400 otherwise). Raised ``PaymentError``s are mapped
to status codes by the handler registered in ``payment_core.main``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from payment_core.api.deps import get_payment_service
from payment_core.api.schemas import (
    IntentDetail,
    PaymentRequestBody,
    PaymentResultBody,
    ProviderStatus,
    RefundRequestBody,
    RefundResultBody,
    TransactionDetail,
    intent_to_detail,
    payment_result_to_body,
    refund_result_to_body,
    transaction_to_detail,
)
from payment_core.engine.service import PaymentService
from payment_core.models.enums import ProviderName
from payment_core.providers.base import ProcessPaymentRequest, RefundRequest

router = APIRouter(tags=["payments"])


def _failure_status(error_code: Optional[str]) -> int:
    return 402 if error_code == "card_declined" else 400


def _to_request(body: PaymentRequestBody) -> ProcessPaymentRequest:
    return ProcessPaymentRequest(
        reservation_id=body.reservation_id,
        customer_id=body.customer_id,
        amount=body.amount,
        currency=body.currency,
        payment_method=body.payment_method,
        provider=body.provider,
        metadata=body.metadata,
        idempotency_key=body.idempotency_key,
    )


@router.post("/payments", response_model=PaymentResultBody)
async def process_payment(body: PaymentRequestBody, service: PaymentService = Depends(get_payment_service)):
    result = await service.process_payment(_to_request(body))
    payload = payment_result_to_body(result)
    if not result.success:
        return JSONResponse(status_code=_failure_status(result.error_code), content=payload.model_dump(mode="json"))
    return payload


@router.get("/payments", response_model=list[TransactionDetail])
async def payment_history(
    customer_id: Optional[str] = Query(None, description="Filter by customer"),
    reservation_id: Optional[str] = Query(None, description="Filter by reservation"),
    service: PaymentService = Depends(get_payment_service),
):
    """List transactions newest first. One of the filters is required."""
    if customer_id:
        transactions = await service.get_payment_history(customer_id)
    elif reservation_id:
        transactions = await service.get_payment_history_by_reservation(reservation_id)
    else:
        raise HTTPException(status_code=400, detail="customer_id or reservation_id is required")
    return [transaction_to_detail(tx) for tx in transactions]


@router.get("/payments/{transaction_id}", response_model=TransactionDetail)
async def payment_status(transaction_id: str, service: PaymentService = Depends(get_payment_service)):
    return transaction_to_detail(await service.get_payment_status(transaction_id))


@router.post("/payments/intents", response_model=IntentDetail)
async def create_intent(body: PaymentRequestBody, service: PaymentService = Depends(get_payment_service)):
    intent = await service.create_payment_intent(_to_request(body))
    return intent_to_detail(intent)


@router.post("/payments/intents/{intent_id}/confirm", response_model=PaymentResultBody)
async def confirm_intent(intent_id: str, service: PaymentService = Depends(get_payment_service)):
    result = await service.confirm_payment_intent(intent_id)
    payload = payment_result_to_body(result)
    if not result.success:
        return JSONResponse(status_code=_failure_status(result.error_code), content=payload.model_dump(mode="json"))
    return payload


@router.post("/payments/refunds", response_model=RefundResultBody)
async def refund(body: RefundRequestBody, service: PaymentService = Depends(get_payment_service)):
    result = await service.refund_payment(RefundRequest(
        transaction_id=body.transaction_id,
        amount=body.amount,
        reason=body.reason,
        provider_payment_id=body.provider_payment_id,
        metadata=body.metadata,
    ))
    payload = refund_result_to_body(result)
    if not result.success:
        return JSONResponse(status_code=_failure_status(result.error_code), content=payload.model_dump(mode="json"))
    return payload


@router.get("/providers", response_model=list[ProviderStatus])
async def providers(service: PaymentService = Depends(get_payment_service)):
    registry = service.registry
    enabled = registry.get_providers()
    statuses = []
    for name in ProviderName:
        provider = enabled.get(name.value)
        statuses.append(ProviderStatus(
            name=name.value,
            enabled=provider is not None,
            supported_methods=[m.value for m in provider.supported_methods] if provider else [],
            disabled_reason=registry.get_disabled_reason(name.value),
        ))
    return statuses
