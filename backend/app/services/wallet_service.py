"""Wallet collaborator: idempotent prize credits in minor units."""

import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import app.database as _db
from app.models.wallet import TransactionType
from app.utils import utcnow

logger = logging.getLogger("phantacci.wallet_service")


async def get_or_create_wallet(user_id: str) -> dict:
    """Get existing wallet or create an empty one."""
    now = utcnow()
    return await _db.db.wallets.find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {
            "user_id": user_id,
            "balance_minor_units": 0,
            "total_won_minor_units": 0,
            "created_at": now,
            "updated_at": now,
        }},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


async def credit(
    user_id: str, amount_minor_units: int, reason: str, idempotency_key: str,
) -> dict:
    """Credit prize money exactly once per ``idempotency_key``.

    The ledger row is written first under a unique key; a repeated key is a
    no-op that returns the original transaction, so retried credits are safe.
    """
    if amount_minor_units <= 0:
        raise ValueError("Credit amount must be positive.")

    now = utcnow()
    tx = {
        "user_id": user_id,
        "type": TransactionType.LEAGUE_PRIZE.value,
        "amount_minor_units": amount_minor_units,
        "description": reason,
        "idempotency_key": idempotency_key,
        "created_at": now,
    }
    try:
        result = await _db.db.wallet_transactions.insert_one(tx)
    except DuplicateKeyError:
        existing = await _db.db.wallet_transactions.find_one({"idempotency_key": idempotency_key})
        logger.info("Credit %s already applied; skipping", idempotency_key)
        return existing or {}
    tx["_id"] = result.inserted_id

    wallet = await _db.db.wallets.find_one_and_update(
        {"user_id": user_id},
        {
            "$inc": {
                "balance_minor_units": amount_minor_units,
                "total_won_minor_units": amount_minor_units,
            },
            "$set": {"updated_at": now},
            "$setOnInsert": {"user_id": user_id, "created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    await _db.db.wallet_transactions.update_one(
        {"_id": tx["_id"]},
        {"$set": {"balance_after_minor_units": wallet["balance_minor_units"]}},
    )

    logger.info(
        "Wallet credit: user=%s amount=%d key=%s",
        user_id, amount_minor_units, idempotency_key,
    )
    return tx


async def get_wallet_transactions(
    user_id: str, limit: int = 50, skip: int = 0,
) -> list[dict]:
    """Get transaction history for a wallet."""
    return await _db.db.wallet_transactions.find(
        {"user_id": user_id},
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)
