"""End-to-end tests for the payment service over the in-memory ledger."""

import asyncio

import pytest
import stripe
from conftest import make_request

from payment_core.engine.errors import (
    IntentNotFoundError,
    PersistenceError,
    TransactionNotFoundError,
    UnsupportedProviderError,
    ValidationError,
)
from payment_core.engine.service import PaymentService
from payment_core.models.enums import PaymentStatus
from payment_core.providers.base import RefundRequest
from payment_core.providers.registry import ProviderRegistry
from payment_core.storage.memory import InMemoryPaymentStore


def _actions(store):
    return [event["action"] for event in store.events]


class TestProcessPayment:
    @pytest.mark.asyncio
    async def test_manual_card_payment_completes(self, service, memory_store):
        result = await service.process_payment(make_request())

        assert result.success is True
        tx = result.transaction
        assert tx.status == PaymentStatus.COMPLETED
        assert tx.amount == 12000
        assert tx.processed_at is not None
        assert tx.provider == "manual"

        stored = await memory_store.find_transaction(tx.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert "payment_processed" in _actions(memory_store)

    @pytest.mark.asyncio
    async def test_status_round_trip(self, service):
        tx = (await service.process_payment(make_request())).transaction
        latest = await service.get_payment_status(tx.id)

        assert latest.id == tx.id
        assert latest.status == PaymentStatus.COMPLETED
        assert latest.amount == 12000

    @pytest.mark.asyncio
    async def test_amount_below_minimum_is_rejected(self, service, memory_store):
        with pytest.raises(ValidationError) as exc_info:
            await service.process_payment(make_request(amount=50))

        assert "below minimum" in exc_info.value.message
        assert await memory_store.list_transactions_by_customer("cust_123") == []

    @pytest.mark.asyncio
    async def test_invalid_request_never_reaches_provider(self, service, mocker):
        spy = mocker.spy(service.registry.get("manual"), "process_payment")

        with pytest.raises(ValidationError):
            await service.process_payment(make_request(customer_id=""))

        spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_all_validation_errors_reported(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.process_payment(make_request(reservation_id="", currency="usd"))

        assert "Reservation ID is required" in exc_info.value.errors
        assert "Only JPY currency is supported" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_disabled_provider_is_unsupported(self, service, memory_store):
        with pytest.raises(UnsupportedProviderError):
            await service.process_payment(make_request(provider="stripe"))
        assert await memory_store.list_transactions_by_customer("cust_123") == []

    @pytest.mark.asyncio
    async def test_method_not_supported_by_provider(self, stripe_service):
        with pytest.raises(ValidationError) as exc_info:
            await stripe_service.process_payment(make_request(provider="stripe", payment_method="cash"))
        assert "not supported by provider stripe" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_metadata_is_sanitized(self, service):
        result = await service.process_payment(make_request(metadata={"seats": 2, "vip": True, "n": None}))
        assert result.transaction.metadata == {"seats": "2", "vip": "true"}

    @pytest.mark.asyncio
    async def test_idempotency_key_yields_one_transaction(self, service, memory_store):
        first = await service.process_payment(make_request(idempotency_key="checkout-42"))
        second = await service.process_payment(make_request(idempotency_key="checkout-42"))

        assert first.transaction.id == second.transaction.id
        assert len(await memory_store.list_transactions_by_customer("cust_123")) == 1

    @pytest.mark.asyncio
    async def test_ledger_failure_raises_persistence_error(self, test_settings):
        class BrokenStore(InMemoryPaymentStore):
            async def create_transaction(self, transaction):
                raise RuntimeError("disk full")

        store = BrokenStore()
        service = PaymentService(ProviderRegistry(config=test_settings, store=store), store, test_settings)

        with pytest.raises(PersistenceError) as exc_info:
            await service.process_payment(make_request())

        assert exc_info.value.status_code == 500
        assert exc_info.value.transaction is not None
        assert exc_info.value.transaction.amount == 12000


class TestStripePayments:
    @pytest.mark.asyncio
    async def test_decline_is_returned_and_not_persisted(self, stripe_service, memory_store, fake_stripe):
        fake_stripe.payment_intents.error = stripe.CardError("Your card was declined.", None, "card_declined")

        result = await stripe_service.process_payment(make_request(provider="stripe"))

        assert result.success is False
        assert result.error_code == "card_declined"
        assert "Your card was declined." in result.error
        assert await memory_store.list_transactions_by_customer("cust_123") == []
        assert "payment_failed" in _actions(memory_store)

    @pytest.mark.asyncio
    async def test_successful_charge_is_stored(self, stripe_service, memory_store):
        result = await stripe_service.process_payment(make_request(provider="stripe"))

        stored = await memory_store.find_transaction(result.transaction.id)
        assert stored.external_reference_id == "pi_test_1"
        assert stored.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_status_reconciled_from_gateway(self, stripe_service, memory_store, fake_stripe):
        fake_stripe.payment_intents.create_status = "processing"
        tx = (await stripe_service.process_payment(make_request(provider="stripe"))).transaction
        assert tx.status == PaymentStatus.PROCESSING

        fake_stripe.payment_intents.intents["pi_test_1"].status = "succeeded"
        latest = await stripe_service.get_payment_status(tx.id)

        assert latest.status == PaymentStatus.COMPLETED
        assert latest.processed_at is not None
        assert (await memory_store.find_transaction(tx.id)).status == PaymentStatus.COMPLETED
        assert "status_reconciled" in _actions(memory_store)

    @pytest.mark.asyncio
    async def test_gateway_lookup_failure_serves_ledger_copy(self, stripe_service, fake_stripe):
        tx = (await stripe_service.process_payment(make_request(provider="stripe"))).transaction
        fake_stripe.payment_intents.error = stripe.APIConnectionError("Network is unreachable")

        latest = await stripe_service.get_payment_status(tx.id)
        assert latest.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_intent_flow(self, stripe_service, memory_store, fake_stripe):
        intent = await stripe_service.create_payment_intent(make_request(provider="stripe", amount=10000))
        assert intent.status == PaymentStatus.PENDING
        assert intent.client_secret == "pi_test_1_secret"

        result = await stripe_service.confirm_payment_intent(intent.id)

        assert result.success is True
        assert result.transaction.payment_intent_id == intent.id
        assert result.transaction.amount == 10000
        stored_intent = await memory_store.find_intent(intent.id)
        assert stored_intent.status == PaymentStatus.COMPLETED
        assert stored_intent.processed_at is not None

    @pytest.mark.asyncio
    async def test_retryable_confirm_failure_keeps_intent_pending(self, stripe_service, memory_store, fake_stripe):
        intent = await stripe_service.create_payment_intent(make_request(provider="stripe"))
        fake_stripe.payment_intents.error = stripe.APIConnectionError("Network is unreachable")

        result = await stripe_service.confirm_payment_intent(intent.id)

        assert result.success is False
        assert result.retryable is True
        stored = await memory_store.find_intent(intent.id)
        assert stored.status == PaymentStatus.PENDING
        assert "Network is unreachable" in stored.error_message

    @pytest.mark.asyncio
    async def test_declined_confirm_fails_intent(self, stripe_service, memory_store, fake_stripe):
        intent = await stripe_service.create_payment_intent(make_request(provider="stripe"))
        fake_stripe.payment_intents.error = stripe.CardError("Your card was declined.", None, "card_declined")

        result = await stripe_service.confirm_payment_intent(intent.id)
        assert result.error_code == "card_declined"
        assert (await memory_store.find_intent(intent.id)).status == PaymentStatus.FAILED

        again = await stripe_service.confirm_payment_intent(intent.id)
        assert again.success is False
        assert again.error_code == "invalid_state"

    @pytest.mark.asyncio
    async def test_failed_intent_creation_is_stored(self, stripe_service, memory_store, fake_stripe):
        fake_stripe.payment_intents.error = stripe.InvalidRequestError("Amount too small", "amount")
        intent = await stripe_service.create_payment_intent(make_request(provider="stripe"))

        stored = await memory_store.find_intent(intent.id)
        assert stored.status == PaymentStatus.FAILED

        result = await stripe_service.confirm_payment_intent(intent.id)
        assert result.error_code == "invalid_state"

    @pytest.mark.asyncio
    async def test_refund_goes_to_gateway(self, stripe_service, fake_stripe):
        tx = (await stripe_service.process_payment(make_request(provider="stripe"))).transaction

        result = await stripe_service.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000))

        assert result.success is True
        assert result.refund_id == "re_test_1"
        assert result.transaction.refund_amount == 3000
        assert fake_stripe.refunds.calls[0]["payment_intent"] == "pi_test_1"
        assert fake_stripe.refunds.calls[0]["amount"] == 3000

    @pytest.mark.asyncio
    async def test_idempotent_replay_keeps_refund_state(self, stripe_service, memory_store, fake_stripe):
        request = make_request(provider="stripe", idempotency_key="order-9")
        tx = (await stripe_service.process_payment(request)).transaction
        await stripe_service.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000))

        replay = await stripe_service.process_payment(request)

        assert replay.transaction.id == tx.id
        assert replay.transaction.status == PaymentStatus.REFUNDED
        assert replay.transaction.refund_amount == 3000
        stored = await memory_store.find_transaction(tx.id)
        assert stored.status == PaymentStatus.REFUNDED
        assert stored.refund_amount == 3000

        rest = await stripe_service.refund_payment(RefundRequest(transaction_id=tx.id))
        assert rest.refund_amount == 9000
        assert sum(call["amount"] for call in fake_stripe.refunds.calls) == 12000

    @pytest.mark.asyncio
    async def test_gateway_refund_failure_leaves_ledger_alone(self, stripe_service, memory_store, fake_stripe):
        tx = (await stripe_service.process_payment(make_request(provider="stripe"))).transaction
        fake_stripe.refunds.error = stripe.InvalidRequestError("Charge has already been refunded.", None)

        result = await stripe_service.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000))

        assert result.success is False
        stored = await memory_store.find_transaction(tx.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.refund_amount is None
        assert "refund_failed" in _actions(memory_store)


class TestIntents:
    @pytest.mark.asyncio
    async def test_manual_intent_links_transaction(self, service, memory_store):
        intent = await service.create_payment_intent(make_request(amount=10000))
        assert intent.status == PaymentStatus.PENDING
        assert (await memory_store.find_intent(intent.id)) is not None

        result = await service.confirm_payment_intent(intent.id)

        assert result.success is True
        assert result.transaction.payment_intent_id == intent.id
        assert result.transaction.amount == 10000
        assert (await memory_store.find_intent(intent.id)).status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_double_confirm_returns_same_transaction(self, service, memory_store):
        intent = await service.create_payment_intent(make_request(amount=10000))

        first = await service.confirm_payment_intent(intent.id)
        second = await service.confirm_payment_intent(intent.id)

        assert first.transaction.id == second.transaction.id
        assert len(await memory_store.list_transactions_by_reservation("res_123")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_confirms_return_same_transaction(self, service, memory_store):
        intent = await service.create_payment_intent(make_request(amount=10000))

        results = await asyncio.gather(*(service.confirm_payment_intent(intent.id) for _ in range(5)))

        assert len({r.transaction.id for r in results}) == 1
        assert len(await memory_store.list_transactions_by_reservation("res_123")) == 1

    @pytest.mark.asyncio
    async def test_unknown_intent(self, service):
        with pytest.raises(IntentNotFoundError) as exc_info:
            await service.confirm_payment_intent("pi_missing")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_confirm_survives_fresh_provider(self, service, memory_store, test_settings):
        intent = await service.create_payment_intent(make_request(amount=10000))

        restarted = PaymentService(ProviderRegistry(config=test_settings, store=memory_store), memory_store, test_settings)
        result = await restarted.confirm_payment_intent(intent.id)

        assert result.success is True
        assert result.transaction.payment_intent_id == intent.id


class TestRefunds:
    @pytest.mark.asyncio
    async def test_partial_refund(self, service, memory_store):
        tx = (await service.process_payment(make_request())).transaction

        result = await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000, reason="schedule change"))

        assert result.success is True
        assert result.refund_amount == 3000
        assert result.transaction.status == PaymentStatus.REFUNDED
        assert result.transaction.refund_amount == 3000
        assert result.transaction.refunded_at is not None
        stored = await memory_store.find_transaction(tx.id)
        assert stored.refund_amount == 3000
        assert stored.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_refunds_accumulate_up_to_amount(self, service):
        tx = (await service.process_payment(make_request())).transaction

        await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000))
        second = await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=4000))
        assert second.transaction.refund_amount == 7000

        with pytest.raises(ValidationError) as exc_info:
            await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=6000))
        assert "exceeds remaining refundable amount 5000" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_default_amount_refunds_remainder(self, service):
        tx = (await service.process_payment(make_request())).transaction
        await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=2000))

        result = await service.refund_payment(RefundRequest(transaction_id=tx.id))

        assert result.refund_amount == 10000
        assert result.transaction.refund_amount == 12000

        with pytest.raises(ValidationError) as exc_info:
            await service.refund_payment(RefundRequest(transaction_id=tx.id))
        assert "already been fully refunded" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_concurrent_refunds_never_exceed_amount(self, service, memory_store):
        tx = (await service.process_payment(make_request())).transaction

        outcomes = await asyncio.gather(
            *(service.refund_payment(RefundRequest(transaction_id=tx.id, amount=5000)) for _ in range(3)),
            return_exceptions=True,
        )

        succeeded = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, ValidationError)]
        assert len(succeeded) == 2
        assert len(rejected) == 1
        assert (await memory_store.find_transaction(tx.id)).refund_amount == 10000

    @pytest.mark.asyncio
    async def test_entity_locks_are_released(self, service):
        tx = (await service.process_payment(make_request())).transaction
        intent = await service.create_payment_intent(make_request())

        await asyncio.gather(
            service.refund_payment(RefundRequest(transaction_id=tx.id, amount=1000)),
            service.refund_payment(RefundRequest(transaction_id=tx.id, amount=1000)),
            service.confirm_payment_intent(intent.id),
            service.confirm_payment_intent(intent.id),
        )

        assert service._locks == {}

    @pytest.mark.asyncio
    async def test_refund_unknown_transaction(self, service):
        with pytest.raises(TransactionNotFoundError):
            await service.refund_payment(RefundRequest(transaction_id="txn_missing", amount=100))

    @pytest.mark.asyncio
    async def test_refund_non_positive_amount(self, service):
        tx = (await service.process_payment(make_request())).transaction
        with pytest.raises(ValidationError):
            await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=0))

    @pytest.mark.asyncio
    async def test_refund_keeps_status_query_consistent(self, service):
        tx = (await service.process_payment(make_request())).transaction
        await service.refund_payment(RefundRequest(transaction_id=tx.id, amount=3000))

        latest = await service.get_payment_status(tx.id)
        assert latest.status == PaymentStatus.REFUNDED
        assert latest.refund_amount == 3000


class TestQueries:
    @pytest.mark.asyncio
    async def test_unknown_transaction_status(self, service):
        with pytest.raises(TransactionNotFoundError):
            await service.get_payment_status("txn_missing")

    @pytest.mark.asyncio
    async def test_history_newest_first(self, service):
        ids = []
        for amount in (1000, 2000, 3000):
            ids.append((await service.process_payment(make_request(amount=amount))).transaction.id)
        await service.process_payment(make_request(customer_id="cust_other"))

        history = await service.get_payment_history("cust_123")
        assert [tx.id for tx in history] == list(reversed(ids))

    @pytest.mark.asyncio
    async def test_history_by_reservation(self, service):
        await service.process_payment(make_request(reservation_id="res_a"))
        await service.process_payment(make_request(reservation_id="res_b"))

        history = await service.get_payment_history_by_reservation("res_a")
        assert len(history) == 1
        assert history[0].reservation_id == "res_a"

    @pytest.mark.asyncio
    async def test_empty_history(self, service):
        assert await service.get_payment_history("nobody") == []


class TestGatewayEvents:
    @pytest.mark.asyncio
    async def test_succeeded_event_completes_intent(self, stripe_service, memory_store):
        intent = await stripe_service.create_payment_intent(make_request(provider="stripe"))

        handled = await stripe_service.handle_gateway_event("payment_intent.succeeded", "pi_test_1")

        assert handled is True
        assert (await memory_store.find_intent(intent.id)).status == PaymentStatus.COMPLETED
        assert "gateway_event" in _actions(memory_store)

    @pytest.mark.asyncio
    async def test_failed_event_records_message(self, stripe_service, memory_store, fake_stripe):
        fake_stripe.payment_intents.create_status = "processing"
        tx = (await stripe_service.process_payment(make_request(provider="stripe"))).transaction

        await stripe_service.handle_gateway_event(
            "payment_intent.payment_failed", "pi_test_1", error_message="Insufficient funds"
        )

        stored = await memory_store.find_transaction(tx.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.error_message == "Insufficient funds"

    @pytest.mark.asyncio
    async def test_late_event_does_not_move_backwards(self, stripe_service, memory_store):
        tx = (await stripe_service.process_payment(make_request(provider="stripe"))).transaction
        assert tx.status == PaymentStatus.COMPLETED

        await stripe_service.handle_gateway_event("payment_intent.payment_failed", "pi_test_1")

        assert (await memory_store.find_transaction(tx.id)).status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored(self, stripe_service):
        assert await stripe_service.handle_gateway_event("charge.dispute.created", "pi_test_1") is False
