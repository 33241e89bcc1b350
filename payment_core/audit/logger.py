"""
Immutable audit trail for payment operations.

Every provider call and ledger change gets an append-only entry with:
  - Transaction ID and/or intent ID
  - Action (what happened)
  - Details (amounts, provider, error messages)
  - Timestamp (UTC)

These records are never modified or deleted.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payment_core.models.ledger import AuditLog

logger = logging.getLogger("payment_core.audit")


def emit(
    action: str,
    transaction_id: Optional[str] = None,
    intent_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Mirror an audit entry to the application log."""
    logger.info(
        "AUDIT | txn=%s intent=%s action=%s | %s",
        transaction_id or "-",
        intent_id or "-",
        action,
        json.dumps(details, default=str)[:200] if details else "",
    )


async def log_event(
    session: AsyncSession,
    action: str,
    transaction_id: Optional[str] = None,
    intent_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    Args:
        session: Database session. The caller commits.
        action: What happened (e.g. "payment_processed", "refund_recorded").
        transaction_id: The transaction this event relates to.
        intent_id: The intent this event relates to.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    entry = AuditLog(
        transaction_id=transaction_id,
        intent_id=intent_id,
        action=action,
        details=json.dumps(details, default=str) if details else None,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    emit(action, transaction_id=transaction_id, intent_id=intent_id, details=details)
    return entry
