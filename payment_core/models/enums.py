"""Enumerations for the payment ledger domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle states shared by transactions and intents."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    """Ways a customer can settle a reservation."""

    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


class ProviderName(str, Enum):
    """Registered payment backends."""

    MANUAL = "manual"
    STRIPE = "stripe"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
})

# refunded -> refunded covers additive partial refunds.
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Whether a stored entity may move from ``current`` to ``target``."""
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]
