from payment_core.models.enums import PaymentMethod, PaymentStatus, ProviderName
from payment_core.models.ledger import AuditLog, Base, PaymentIntentRecord, PaymentTransactionRecord
from payment_core.models.payment import PaymentIntent, PaymentTransaction

__all__ = [
    "Base",
    "PaymentTransactionRecord",
    "PaymentIntentRecord",
    "AuditLog",
    "PaymentTransaction",
    "PaymentIntent",
    "PaymentStatus",
    "PaymentMethod",
    "ProviderName",
]
