"""
Payment error taxonomy.

Validation, unsupported-provider and not-found conditions are raised to the
caller. Provider business failures (declines, gateway rejections) are never
raised; they come back as ``success=False`` results instead.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from payment_core.models.payment import PaymentTransaction


class PaymentError(Exception):
    """Base exception for the payment core."""

    def __init__(self, message: str, code: str = "payment_error", status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class ValidationError(PaymentError):
    """A request failed validation before reaching any provider."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "Payment validation failed: " + ", ".join(self.errors),
            code="validation_error",
            status_code=400,
        )


class UnsupportedProviderError(PaymentError):
    """The requested provider is absent from the enabled set."""

    def __init__(self, provider: str, reason: Optional[str] = None):
        self.provider = provider
        self.reason = reason
        message = f"Payment provider '{provider}' is not available"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, code="unsupported_provider", status_code=503)


class NotFoundError(PaymentError):
    """Unknown transaction or intent id."""

    def __init__(self, resource: str, identifier: str):
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found", code="not_found", status_code=404)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str):
        super().__init__("Transaction", transaction_id)


class IntentNotFoundError(NotFoundError):
    def __init__(self, intent_id: str):
        super().__init__("Payment intent", intent_id)


class ProviderConfigurationError(PaymentError):
    """A provider was constructed without the configuration it needs."""

    def __init__(self, message: str):
        super().__init__(message, code="provider_misconfigured", status_code=500)


class RefundLimitExceededError(PaymentError):
    """Applying a refund would push ``refund_amount`` past ``amount``."""

    def __init__(self, transaction_id: str, requested: int, remaining: Optional[int] = None):
        self.transaction_id = transaction_id
        self.requested = requested
        self.remaining = remaining
        message = f"Refund of {requested} exceeds the refundable amount of transaction {transaction_id}"
        if remaining is not None:
            message = f"{message} (remaining {remaining})"
        super().__init__(message, code="refund_limit_exceeded", status_code=409)


class PersistenceError(PaymentError):
    """
    The ledger could not be written after a provider call.

    Money may already have moved at the provider, so this is kept distinct
    from provider failures; ``transaction`` holds the unsaved record for
    manual reconciliation.
    """

    def __init__(
        self,
        message: str,
        transaction: Optional["PaymentTransaction"] = None,
        refund_amount: Optional[int] = None,
    ):
        self.transaction = transaction
        self.refund_amount = refund_amount
        super().__init__(message, code="persistence_error", status_code=500)
