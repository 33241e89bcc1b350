"""
In-memory payment entities.

Providers build these and hand them back to the service; only the service
persists them (see ``payment_core.storage``). They are plain dataclasses so
they can be copied, compared and passed across the provider boundary without
a database session.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from payment_core.models.enums import PaymentMethod, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@dataclass
class PaymentTransaction:
    """
    Durable record of money having moved (or having been attempted to).

    Amounts are integers in the minor unit of ``currency``. A transaction is
    only ever mutated by refunds once it has been stored:
    ``refund_amount`` accumulates and never exceeds ``amount``.
    """

    id: str
    reservation_id: str
    customer_id: str
    amount: int
    currency: str
    provider: str
    payment_method: PaymentMethod
    status: PaymentStatus
    payment_intent_id: Optional[str] = None
    external_reference_id: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def remaining_refundable(self) -> int:
        return self.amount - (self.refund_amount or 0)


@dataclass
class PaymentIntent:
    """
    Provisional authorization awaiting confirmation.

    ``external_reference_id`` is the provider-side handle used to confirm it;
    ``client_secret`` is only populated by gateway providers that need a
    client-side authentication step.
    """

    id: str
    provider: str
    amount: int
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    reservation_id: str
    customer_id: str
    external_reference_id: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
