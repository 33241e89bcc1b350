"""
Payment request validation.

Before a request reaches any provider we verify:
  1. Amount is an integer within the configured bounds
  2. Reservation and customer IDs are present
  3. Currency is the configured settlement currency
  4. Payment method and provider are present and known
  5. Metadata is a JSON-serializable mapping

All checks run and every failure is collected, so callers get the complete
list of problems in one round trip rather than the first one only.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from payment_core.config import settings
from payment_core.models.enums import PaymentMethod, PaymentStatus
from payment_core.models.payment import PaymentTransaction
from payment_core.providers.base import ProcessPaymentRequest

MAX_METADATA_KEY_LENGTH = 40
MAX_METADATA_VALUE_LENGTH = 500

REFUNDABLE_STATUSES = {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}


@dataclass
class ValidationResult:
    """Result of a validation pass."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_payment_amount(
    amount: Any,
    min_amount: Optional[int] = None,
    max_amount: Optional[int] = None,
    currency: Optional[str] = None,
) -> ValidationResult:
    """
    Check that an amount is a whole number of minor units within bounds.

    Bounds default to the configured ``payment_min_amount`` and
    ``payment_max_amount``.
    """
    min_amount = settings.payment_min_amount if min_amount is None else min_amount
    max_amount = settings.payment_max_amount if max_amount is None else max_amount
    unit = (currency or settings.payment_currency).upper()

    # bool is an int subclass; True is not an amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        return ValidationResult(valid=False, errors=["Amount must be an integer"])

    if amount < min_amount:
        return ValidationResult(
            valid=False,
            errors=[f"Amount {amount} is below minimum of {min_amount} {unit}"],
        )

    if amount > max_amount:
        return ValidationResult(
            valid=False,
            errors=[f"Amount {amount} exceeds maximum of {max_amount} {unit}"],
        )

    return ValidationResult(valid=True)


def validate_payment_request(
    request: ProcessPaymentRequest,
    min_amount: Optional[int] = None,
    max_amount: Optional[int] = None,
    currency: Optional[str] = None,
) -> ValidationResult:
    """
    Validate a payment or intent request.

    Args:
        request: The incoming request.
        min_amount: Lower bound in minor units (defaults to settings).
        max_amount: Upper bound in minor units (defaults to settings).
        currency: The only accepted currency (defaults to settings).

    Returns:
        ValidationResult listing every problem found.
    """
    expected_currency = (currency or settings.payment_currency).lower()
    errors: list[str] = []

    errors.extend(validate_payment_amount(request.amount, min_amount, max_amount, expected_currency).errors)

    if not request.reservation_id:
        errors.append("Reservation ID is required")

    if not request.customer_id:
        errors.append("Customer ID is required")

    if not request.currency or request.currency.lower() != expected_currency:
        errors.append(f"Only {expected_currency.upper()} currency is supported")

    if not request.payment_method:
        errors.append("Payment method is required")
    elif request.payment_method not in [m.value for m in PaymentMethod]:
        errors.append(f"Unsupported payment method: {request.payment_method}")

    if not request.provider:
        errors.append("Payment provider is required")

    if request.metadata is not None:
        if not isinstance(request.metadata, dict):
            errors.append("Invalid metadata format")
        else:
            try:
                json.dumps(request.metadata)
            except (TypeError, ValueError):
                errors.append("Invalid metadata format")

    return ValidationResult(valid=not errors, errors=errors)


def validate_refund(transaction: PaymentTransaction, amount: Any) -> ValidationResult:
    """
    Check that ``amount`` can be refunded from ``transaction``.

    The caller resolves a missing amount to the remaining refundable amount
    before calling this.
    """
    errors: list[str] = []

    if PaymentStatus(transaction.status) not in REFUNDABLE_STATUSES:
        errors.append(f"Transaction in status '{PaymentStatus(transaction.status).value}' cannot be refunded")

    if isinstance(amount, bool) or not isinstance(amount, int):
        errors.append("Refund amount must be an integer")
    elif amount <= 0:
        if transaction.remaining_refundable <= 0:
            errors.append("Transaction has already been fully refunded")
        else:
            errors.append("Refund amount must be positive")
    elif amount > transaction.remaining_refundable:
        errors.append(
            f"Refund amount {amount} exceeds remaining refundable amount "
            f"{transaction.remaining_refundable}"
        )

    return ValidationResult(valid=not errors, errors=errors)


def sanitize_metadata(metadata: Any) -> dict[str, str]:
    """
    Reduce metadata to short string keys and string values.

    Numbers and booleans are stringified; anything else (nested objects,
    None, over-long strings) is dropped. Gateways cap metadata sizes, and the
    ledger stores it for audit only.
    """
    if not isinstance(metadata, dict):
        return {}

    sanitized: dict[str, str] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or len(key) > MAX_METADATA_KEY_LENGTH:
            continue
        if isinstance(value, str):
            if len(value) <= MAX_METADATA_VALUE_LENGTH:
                sanitized[key] = value
        elif isinstance(value, bool):
            sanitized[key] = "true" if value else "false"
        elif isinstance(value, (int, float)):
            sanitized[key] = str(value)

    return sanitized
