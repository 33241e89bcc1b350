"""
Abstract payment provider interface.

Every payment backend (the in-process manual provider, the hosted Stripe
gateway, anything added later) implements this interface and is selected by
name through the provider registry.

Contract:
  - Expected business outcomes (declines, unknown references, gateway
    rejections, timeouts) are returned as results with ``success=False`` and
    an ``error`` message. They are never raised.
  - Providers may raise only for programmer/deployment errors, e.g. missing
    credentials at construction time (``ProviderConfigurationError``).
  - Providers never write to the ledger. They return in-memory entities and
    the payment service persists them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from payment_core.models.enums import PaymentMethod
from payment_core.models.payment import PaymentIntent, PaymentTransaction


@dataclass
class ProcessPaymentRequest:
    """Request to charge (or record) a payment for a reservation."""

    reservation_id: str
    customer_id: str
    amount: int  # Minor currency units
    currency: str
    payment_method: PaymentMethod
    provider: str
    metadata: Optional[dict] = None
    idempotency_key: Optional[str] = None


@dataclass
class ProcessPaymentResult:
    """Outcome of a payment or intent confirmation."""

    success: bool
    transaction: Optional[PaymentTransaction] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    requires_action: bool = False
    client_secret: Optional[str] = None


@dataclass
class RefundRequest:
    """
    Request to refund (part of) a stored transaction.

    ``amount`` defaults to the remaining refundable amount.
    ``provider_payment_id`` lets the caller name the gateway-side payment
    directly instead of having the provider resolve it.
    """

    transaction_id: str
    amount: Optional[int] = None
    reason: Optional[str] = None
    provider_payment_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    """Outcome of a refund."""

    success: bool
    refund_amount: Optional[int] = None
    transaction: Optional[PaymentTransaction] = None
    refund_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'manual', 'stripe')."""
        ...

    @property
    @abstractmethod
    def supported_methods(self) -> list[PaymentMethod]:
        """Payment methods this provider can settle."""
        ...

    def supports(self, method: PaymentMethod | str) -> bool:
        return PaymentMethod(method) in self.supported_methods

    @abstractmethod
    async def process_payment(self, request: ProcessPaymentRequest) -> ProcessPaymentResult:
        """Charge or record a payment in a single step."""
        ...

    @abstractmethod
    async def create_payment_intent(self, request: ProcessPaymentRequest) -> PaymentIntent:
        """
        Create a provisional intent for client-driven confirmation.

        Always returns an intent, even when the provider rejected it; in that
        case the intent carries ``status=failed`` and ``error_message`` so the
        attempt stays queryable.
        """
        ...

    @abstractmethod
    async def confirm_payment_intent(self, external_id: str) -> ProcessPaymentResult:
        """Confirm an intent by its provider-side reference."""
        ...

    @abstractmethod
    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        """Refund (part of) a payment."""
        ...

    @abstractmethod
    async def get_payment_status(self, transaction_id: str) -> Optional[PaymentTransaction]:
        """
        Return the provider's current view of a transaction.

        ``transaction_id`` is the provider-side reference when one exists.
        Returns None when the provider has no record of it.
        """
        ...

    @abstractmethod
    def validate_config(self) -> bool:
        """Whether the provider has everything it needs to operate."""
        ...
