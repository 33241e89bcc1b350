from payment_core.storage.base import PaymentStore
from payment_core.storage.memory import InMemoryPaymentStore
from payment_core.storage.sql import SqlPaymentStore

__all__ = ["PaymentStore", "InMemoryPaymentStore", "SqlPaymentStore"]
