"""Persistent worker state: last completed run per background job.

Kept in a small `worker_state` collection so /health can show when the
lifecycle and payout jobs last finished, across restarts.
"""

from datetime import datetime

import app.database as _db
from app.utils import utcnow


async def get_synced_at(worker_id: str) -> datetime | None:
    """Get the last completed run for a worker."""
    doc = await _db.db.worker_state.find_one({"_id": worker_id})
    return doc["synced_at"] if doc else None


async def set_synced(worker_id: str) -> None:
    """Mark a worker run as completed now."""
    await _db.db.worker_state.update_one(
        {"_id": worker_id},
        {"$set": {"synced_at": utcnow()}},
        upsert=True,
    )
