"""Operator alert path for data-integrity faults.

Alerts are insert-only; operators acknowledge them from the admin tools.
"""

import logging
from typing import Optional

import app.database as _db
from app.utils import utcnow

logger = logging.getLogger("phantacci.alerts")


async def raise_operator_alert(
    *,
    kind: str,
    target_id: str,
    message: str,
    metadata: Optional[dict] = None,
) -> None:
    """Log at CRITICAL and persist an alert record for the operator dashboard.

    Args:
        kind: Alert identifier, e.g. "PRIZE_MODEL_INTEGRITY".
        target_id: Affected object (League-ID, Entry-ID, ...).
        message: Human-readable summary.
        metadata: Optional structured context.
    """
    logger.critical("[%s] %s: %s %s", kind, target_id, message, metadata or {})
    await _db.db.ops_alerts.insert_one({
        "kind": kind,
        "target_id": target_id,
        "message": message,
        "metadata": metadata or {},
        "acknowledged": False,
        "created_at": utcnow(),
    })
