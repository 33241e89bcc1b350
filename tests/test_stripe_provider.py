"""Tests for the Stripe gateway provider (fake client, no network)."""

import time

import pytest
import stripe
from conftest import make_request

from payment_core.engine.errors import ProviderConfigurationError
from payment_core.models.enums import PaymentStatus
from payment_core.providers.base import RefundRequest
from payment_core.providers.stripe_provider import StripePaymentProvider, map_gateway_status


@pytest.fixture
def provider(fake_stripe):
    return StripePaymentProvider(secret_key="sk_test_123", timeout_seconds=2.0, client=fake_stripe)


class TestStatusMapping:
    def test_known_statuses(self):
        assert map_gateway_status("succeeded") == PaymentStatus.COMPLETED
        assert map_gateway_status("processing") == PaymentStatus.PROCESSING
        assert map_gateway_status("canceled") == PaymentStatus.CANCELLED

    def test_requires_variants_are_pending(self):
        for status in ("requires_payment_method", "requires_confirmation", "requires_action", "requires_capture"):
            assert map_gateway_status(status) == PaymentStatus.PENDING

    def test_unknown_fails_closed(self):
        assert map_gateway_status("something_new") == PaymentStatus.FAILED
        assert map_gateway_status(None) == PaymentStatus.FAILED


def test_missing_secret_key_raises():
    with pytest.raises(ProviderConfigurationError):
        StripePaymentProvider(secret_key=None)
    with pytest.raises(ProviderConfigurationError):
        StripePaymentProvider(secret_key="")


def test_validate_config(provider):
    assert provider.validate_config() is True
    assert provider.supports("card")
    assert not provider.supports("cash")


@pytest.mark.asyncio
async def test_process_payment_creates_and_confirms(provider, fake_stripe):
    result = await provider.process_payment(make_request(metadata={"note": "vip"}))

    assert result.success is True
    assert result.requires_action is False
    tx = result.transaction
    assert tx.status == PaymentStatus.COMPLETED
    assert tx.external_reference_id == "pi_test_1"
    assert tx.id == "txn_pi_test_1"
    assert tx.reservation_id == "res_123"
    assert tx.customer_id == "cust_123"
    assert tx.processed_at is not None

    kind, call = fake_stripe.payment_intents.calls[0]
    assert kind == "create"
    assert call["params"]["confirm"] is True
    assert call["params"]["amount"] == 12000
    assert call["params"]["metadata"]["note"] == "vip"


@pytest.mark.asyncio
async def test_process_payment_forwards_idempotency_key(provider, fake_stripe):
    first = await provider.process_payment(make_request(idempotency_key="order-7"))
    second = await provider.process_payment(make_request(idempotency_key="order-7"))

    assert first.transaction.id == second.transaction.id
    _, call = fake_stripe.payment_intents.calls[0]
    assert call["options"] == {"idempotency_key": "order-7"}


@pytest.mark.asyncio
async def test_requires_action_surfaces_client_secret(provider, fake_stripe):
    fake_stripe.payment_intents.create_status = "requires_action"
    result = await provider.process_payment(make_request())

    assert result.success is True
    assert result.requires_action is True
    assert result.client_secret == "pi_test_1_secret"
    assert result.transaction.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_decline_is_returned_not_raised(provider, fake_stripe):
    fake_stripe.payment_intents.error = stripe.CardError("Your card was declined.", None, "card_declined")
    result = await provider.process_payment(make_request())

    assert result.success is False
    assert "Your card was declined." in result.error
    assert result.error_code == "card_declined"
    assert result.retryable is False


@pytest.mark.asyncio
async def test_connection_error_is_retryable(provider, fake_stripe):
    fake_stripe.payment_intents.error = stripe.APIConnectionError("Network is unreachable")
    result = await provider.process_payment(make_request())

    assert result.success is False
    assert result.error_code == "gateway_error"
    assert result.retryable is True


@pytest.mark.asyncio
async def test_timeout_is_a_failed_result(fake_stripe):
    def slow_create(params=None, options=None):
        time.sleep(0.3)

    fake_stripe.payment_intents.create = slow_create
    provider = StripePaymentProvider(secret_key="sk_test_123", timeout_seconds=0.05, client=fake_stripe)
    result = await provider.process_payment(make_request())

    assert result.success is False
    assert result.error_code == "gateway_timeout"
    assert result.retryable is True


@pytest.mark.asyncio
async def test_unexpected_gateway_status_fails_closed(provider, fake_stripe):
    fake_stripe.payment_intents.create_status = "mystery"
    result = await provider.process_payment(make_request())

    assert result.success is False
    assert result.transaction.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_create_intent_returns_client_secret(provider):
    intent = await provider.create_payment_intent(make_request(amount=10000))

    assert intent.status == PaymentStatus.PENDING
    assert intent.external_reference_id == "pi_test_1"
    assert intent.client_secret == "pi_test_1_secret"
    assert intent.amount == 10000


@pytest.mark.asyncio
async def test_create_intent_failure_yields_failed_intent(provider, fake_stripe):
    fake_stripe.payment_intents.error = stripe.InvalidRequestError("Amount too small", "amount")
    intent = await provider.create_payment_intent(make_request())

    assert intent.status == PaymentStatus.FAILED
    assert intent.external_reference_id is None
    assert "Amount too small" in intent.error_message


@pytest.mark.asyncio
async def test_confirm_intent(provider):
    intent = await provider.create_payment_intent(make_request(amount=10000))
    result = await provider.confirm_payment_intent(intent.external_reference_id)

    assert result.success is True
    assert result.transaction.status == PaymentStatus.COMPLETED
    assert result.transaction.payment_intent_id == intent.id
    assert result.transaction.amount == 10000


@pytest.mark.asyncio
async def test_refund_with_explicit_gateway_id(provider, fake_stripe):
    result = await provider.refund_payment(RefundRequest(
        transaction_id="txn_elsewhere",
        amount=3000,
        reason="customer changed plans",
        provider_payment_id="pi_external",
    ))

    assert result.success is True
    assert result.refund_amount == 3000
    assert result.refund_id == "re_test_1"
    params = fake_stripe.refunds.calls[0]
    assert params["payment_intent"] == "pi_external"
    assert params["reason"] == "requested_by_customer"
    assert params["metadata"]["reason"] == "customer changed plans"


@pytest.mark.asyncio
async def test_refund_resolves_gateway_id_from_transaction_id(fake_stripe):
    issuer = StripePaymentProvider(secret_key="sk_test_123", timeout_seconds=2.0, client=fake_stripe)
    tx = (await issuer.process_payment(make_request())).transaction

    # A separate instance holds no state about the charge.
    provider = StripePaymentProvider(secret_key="sk_test_123", timeout_seconds=2.0, client=fake_stripe)
    result = await provider.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000))

    assert result.success is True
    assert fake_stripe.refunds.calls[0]["payment_intent"] == tx.external_reference_id
    assert result.transaction.id == tx.id
    assert result.transaction.refund_amount == 3000


@pytest.mark.asyncio
async def test_refund_unresolvable_payment(provider, fake_stripe):
    result = await provider.refund_payment(RefundRequest(transaction_id="txn_unknown", amount=3000))

    assert result.success is False
    assert result.error_code == "unresolved_payment"
    assert fake_stripe.refunds.calls == []


@pytest.mark.asyncio
async def test_refund_rejected_by_gateway(provider, fake_stripe):
    fake_stripe.refunds.error = stripe.InvalidRequestError("Charge has already been refunded.", None)
    result = await provider.refund_payment(RefundRequest(
        transaction_id="txn_1", amount=3000, provider_payment_id="pi_external",
    ))

    assert result.success is False
    assert result.error_code == "gateway_error"
    assert "already been refunded" in result.error


@pytest.mark.asyncio
async def test_get_payment_status(provider, fake_stripe):
    fake_stripe.payment_intents.create_status = "processing"
    tx = (await provider.process_payment(make_request())).transaction
    assert tx.status == PaymentStatus.PROCESSING

    fake_stripe.payment_intents.intents[tx.external_reference_id].status = "succeeded"
    latest = await provider.get_payment_status(tx.external_reference_id)
    assert latest.id == tx.id
    assert latest.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_get_payment_status_gateway_error(provider, fake_stripe):
    fake_stripe.payment_intents.error = stripe.InvalidRequestError("No such payment_intent", "id")
    assert await provider.get_payment_status("pi_missing") is None
