"""
backend/app/database.py

Purpose:
    MongoDB connection bootstrap and index management for league, entry,
    payout and wallet collections.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - app.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("phantacci.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Users ----
    await db.users.create_index("email", unique=True, sparse=True)

    # ---- Linked FPL teams ----
    # One external FPL team id may be linked by at most one account.
    await db.linked_teams.create_index("fpl_team_id", unique=True)
    await db.linked_teams.create_index("owner_user_id")

    # ---- Leagues ----
    await db.leagues.create_index("league_code", unique=True, sparse=True)
    await db.leagues.create_index([("league_state", 1), ("start_gameweek", 1)])
    await db.leagues.create_index("status", sparse=True)  # legacy records

    # ---- League entries ----
    await db.league_entries.create_index(
        [("league_id", 1), ("linked_team_id", 1)], unique=True,
    )
    await db.league_entries.create_index([("league_id", 1), ("rank", 1)])
    await db.league_entries.create_index("user_id")

    # ---- Standings snapshots (one document per league) ----
    await db.league_standings.create_index("league_id", unique=True)

    # ---- Payouts ----
    await db.league_payouts.create_index(
        [("league_id", 1), ("entry_id", 1)], unique=True,
    )
    await db.league_payouts.create_index([("delivery_status", 1), ("updated_at", 1)])

    # ---- Wallets ----
    await db.wallets.create_index("user_id", unique=True)
    await db.wallet_transactions.create_index("idempotency_key", unique=True, sparse=True)
    await db.wallet_transactions.create_index([("user_id", 1), ("created_at", -1)])

    # ---- Operator alerts ----
    await db.ops_alerts.create_index([("acknowledged", 1), ("created_at", -1)])

    logger.info("Database indexes ensured")
