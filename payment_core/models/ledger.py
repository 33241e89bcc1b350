"""SQLAlchemy models for the payment ledger."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentTransactionRecord(Base):
    """
    A stored payment transaction.

    Rows are never deleted; refunds update ``refund_amount`` in place through
    a conditional UPDATE so the accumulated value cannot pass ``amount``.
    """

    __tablename__ = "payment_transactions"

    id = Column(String(64), primary_key=True)
    reservation_id = Column(String(100), nullable=False, index=True)
    customer_id = Column(String(100), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(30), nullable=False)
    payment_method = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    payment_intent_id = Column(String(64), nullable=True, index=True)
    external_reference_id = Column(String(100), nullable=True, index=True)
    metadata_json = Column("metadata", Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_amount = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class PaymentIntentRecord(Base):
    """A stored payment intent, keyed by our own id."""

    __tablename__ = "payment_intents"

    id = Column(String(64), primary_key=True)
    external_reference_id = Column(String(100), nullable=True, index=True)
    provider = Column(String(30), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False)
    payment_method = Column(String(20), nullable=False)
    reservation_id = Column(String(100), nullable=False)
    customer_id = Column(String(100), nullable=False)
    metadata_json = Column("metadata", Text, nullable=True)
    client_secret = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every provider call and ledger change gets one. These are append-only and
    never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), nullable=True, index=True)
    intent_id = Column(String(64), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)
