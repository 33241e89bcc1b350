"""Shared test fixtures."""

from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payment_core.config import Settings
from payment_core.engine.service import PaymentService
from payment_core.models.ledger import Base
from payment_core.providers.base import ProcessPaymentRequest
from payment_core.providers.registry import ProviderRegistry
from payment_core.storage.memory import InMemoryPaymentStore
from payment_core.storage.sql import SqlPaymentStore


class FakePaymentIntents:
    """Stands in for ``StripeClient.payment_intents``; no network."""

    def __init__(self):
        self.intents: dict[str, SimpleNamespace] = {}
        self.calls: list[tuple[str, dict]] = []
        self.create_status = "succeeded"
        self.confirm_status = "succeeded"
        self.error = None
        self._counter = 0

    def create(self, params=None, options=None):
        self.calls.append(("create", {"params": params, "options": options}))
        if self.error is not None:
            raise self.error
        key = (options or {}).get("idempotency_key")
        if key:
            for intent in self.intents.values():
                if intent.idempotency_key == key:
                    return intent
        self._counter += 1
        intent_id = f"pi_test_{self._counter}"
        intent = SimpleNamespace(
            id=intent_id,
            status=self.create_status if params.get("confirm") else "requires_payment_method",
            amount=params["amount"],
            currency=params["currency"],
            metadata=dict(params.get("metadata") or {}),
            client_secret=f"{intent_id}_secret",
            idempotency_key=key,
        )
        self.intents[intent_id] = intent
        return intent

    def confirm(self, intent_id, params=None, options=None):
        self.calls.append(("confirm", {"id": intent_id}))
        if self.error is not None:
            raise self.error
        intent = self.intents[intent_id]
        intent.status = self.confirm_status
        return intent

    def retrieve(self, intent_id, params=None, options=None):
        self.calls.append(("retrieve", {"id": intent_id}))
        if self.error is not None:
            raise self.error
        return self.intents[intent_id]


class FakeRefunds:
    def __init__(self):
        self.calls: list[dict] = []
        self.status = "succeeded"
        self.error = None

    def create(self, params=None, options=None):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            id=f"re_test_{len(self.calls)}",
            status=self.status,
            amount=params.get("amount", 0),
            currency="jpy",
        )


@pytest.fixture
def fake_stripe():
    return SimpleNamespace(payment_intents=FakePaymentIntents(), refunds=FakeRefunds())


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_secret_key=None,
        stripe_publishable_key=None,
        stripe_webhook_secret=None,
        manual_status_synthesis=False,
        payment_currency="jpy",
        payment_min_amount=100,
        payment_max_amount=9_999_999,
    )


@pytest.fixture
def stripe_settings(test_settings):
    return test_settings.model_copy(update={
        "stripe_secret_key": "sk_test_123",
        "stripe_webhook_secret": "whsec_test",
        "gateway_timeout_seconds": 2.0,
    })


@pytest.fixture
def memory_store():
    return InMemoryPaymentStore()


@pytest.fixture
def registry(test_settings, memory_store):
    return ProviderRegistry(config=test_settings, store=memory_store)


@pytest.fixture
def service(registry, memory_store, test_settings):
    return PaymentService(registry=registry, store=memory_store, config=test_settings)


@pytest.fixture
def stripe_service(stripe_settings, memory_store, fake_stripe):
    registry = ProviderRegistry(config=stripe_settings, store=memory_store, stripe_client=fake_stripe)
    return PaymentService(registry=registry, store=memory_store, config=stripe_settings)


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """A fresh SQLite ledger per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlPaymentStore(session_factory)

    await engine.dispose()


def make_request(**overrides) -> ProcessPaymentRequest:
    values = dict(
        reservation_id="res_123",
        customer_id="cust_123",
        amount=12000,
        currency="jpy",
        payment_method="card",
        provider="manual",
        metadata=None,
    )
    values.update(overrides)
    return ProcessPaymentRequest(**values)
