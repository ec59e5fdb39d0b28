"""
backend/app/services/league_repository.py

Purpose:
    Persistence access layer for leagues, entries, standings snapshots and
    payout records. Owns the legacy-status mapping (applied once when a league
    document is read), the atomic capacity reservation used by entry
    admission, and the compare-and-swap lifecycle transition.

Dependencies:
    - app.database
    - app.models.league
    - pymongo
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from bson import ObjectId
from pymongo import ReturnDocument, UpdateOne
from pymongo.errors import DuplicateKeyError

import app.database as _db
from app.models.league import (
    Entry,
    League,
    LeagueState,
    LinkedTeam,
    PayoutDeliveryStatus,
    PayoutRecord,
    legacy_status_for,
    resolve_league_state,
)
from app.models.league_errors import LeagueErrorCode, LeagueRuleViolation, violation
from app.utils import utcnow

logger = logging.getLogger("phantacci.league_repository")


def state_filter(state: LeagueState) -> dict[str, Any]:
    """Mongo filter matching leagues in ``state``, including unmigrated records."""
    clauses: list[dict[str, Any]] = [{"league_state": state.value}]
    legacy = legacy_status_for(state)
    if legacy is not None:
        clauses.append({"league_state": None, "status": legacy.value})
    if state == LeagueState.OPEN_FOR_ENTRY:
        clauses.append({"league_state": None, "status": None})
    return {"$or": clauses}


def league_from_doc(doc: dict) -> League:
    data = {k: v for k, v in doc.items() if k not in ("_id", "status")}
    data["id"] = str(doc["_id"])
    data["league_state"] = resolve_league_state(doc.get("league_state"), doc.get("status"))
    return League.model_validate(data)


def league_to_doc(league: League) -> dict:
    doc = league.model_dump(mode="json", exclude={"id"})
    # Keep datetimes native for Mongo.
    for field in ("created_at", "soft_finalized_at", "finalized_at", "payouts_computed_at"):
        doc[field] = getattr(league, field)
    return doc


def entry_from_doc(doc: dict) -> Entry:
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["id"] = str(doc["_id"])
    return Entry.model_validate(data)


def payout_from_doc(doc: dict) -> PayoutRecord:
    return PayoutRecord.model_validate({k: v for k, v in doc.items() if k != "_id"})


class LeagueRepository:
    # ---------- Leagues ----------

    async def get_league(self, league_id: str) -> League | None:
        doc = await _db.db.leagues.find_one({"_id": ObjectId(league_id)})
        return league_from_doc(doc) if doc else None

    async def insert_league(self, league: League) -> League:
        doc = league_to_doc(league)
        doc["created_at"] = doc.get("created_at") or utcnow()
        doc["updated_at"] = doc["created_at"]
        result = await _db.db.leagues.insert_one(doc)
        return league.model_copy(update={"id": str(result.inserted_id), "created_at": doc["created_at"]})

    async def find_unfinalized_leagues(self, limit: int = 1000) -> list[League]:
        docs = await _db.db.leagues.find(
            {"$nor": [state_filter(LeagueState.FINALIZED)]},
        ).to_list(length=limit)
        return [league_from_doc(d) for d in docs]

    async def find_finalized_without_payouts(self, limit: int = 100) -> list[League]:
        docs = await _db.db.leagues.find(
            {**state_filter(LeagueState.FINALIZED), "payouts_computed_at": None},
        ).to_list(length=limit)
        return [league_from_doc(d) for d in docs]

    async def try_transition_state(
        self, league_id: str, from_state: LeagueState, to_state: LeagueState,
    ) -> bool:
        """CAS the lifecycle state. Only one caller can win a given transition.

        The write always stores the canonical ``league_state`` and drops the
        legacy ``status`` flag, migrating old records as they move.
        """
        now = utcnow()
        fields: dict[str, Any] = {"league_state": to_state.value, "updated_at": now}
        if to_state == LeagueState.WAITING_FOR_UPDATES:
            fields["soft_finalized_at"] = now
        if to_state == LeagueState.FINALIZED:
            fields["finalized_at"] = now
        result = await _db.db.leagues.update_one(
            {"_id": ObjectId(league_id), **state_filter(from_state)},
            {"$set": fields, "$unset": {"status": ""}},
        )
        won = result.modified_count == 1
        if won:
            logger.info("League %s state %s -> %s", league_id, from_state.value, to_state.value)
        return won

    async def mark_payouts_computed(self, league_id: str) -> None:
        await _db.db.leagues.update_one(
            {"_id": ObjectId(league_id), "payouts_computed_at": None},
            {"$set": {"payouts_computed_at": utcnow()}},
        )

    # ---------- Linked teams ----------

    async def get_linked_team(self, linked_team_id: str) -> LinkedTeam | None:
        doc = await _db.db.linked_teams.find_one({"_id": ObjectId(linked_team_id)})
        if not doc:
            return None
        return LinkedTeam(
            id=str(doc["_id"]),
            fpl_team_id=doc["fpl_team_id"],
            owner_user_id=doc["owner_user_id"],
            team_name=doc.get("team_name"),
        )

    async def count_linked_teams(self, user_id: str) -> int:
        return await _db.db.linked_teams.count_documents({"owner_user_id": user_id})

    # ---------- Entries ----------

    async def get_entries(self, league_id: str) -> list[Entry]:
        docs = await _db.db.league_entries.find(
            {"league_id": league_id},
        ).sort("created_at", 1).to_list(length=None)
        return [entry_from_doc(d) for d in docs]

    async def admit_entry(
        self, league: League, linked_team_id: str, user_id: str,
    ) -> Entry | LeagueRuleViolation:
        """Reserve a slot and create the entry as one unit.

        The reservation is a guarded ``$inc`` (open state and
        ``current_team_count < max_teams``), so two writers can never both
        take the last slot. If the entry insert fails or the caller goes away
        before it lands, the slot is released again.
        """
        oid = ObjectId(league.id)
        now = utcnow()
        reserved = await _db.db.leagues.find_one_and_update(
            {
                "_id": oid,
                **state_filter(LeagueState.OPEN_FOR_ENTRY),
                "$expr": {"$lt": ["$current_team_count", "$max_teams"]},
            },
            {"$inc": {"current_team_count": 1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not reserved:
            return await self._reservation_failure(league)

        entry_doc = {
            "league_id": league.id,
            "linked_team_id": linked_team_id,
            "user_id": user_id,
            "gameweek_points": 0,
            "total_points": 0,
            "rank": None,
            "previous_rank": None,
            "h2h_wins": 0,
            "h2h_losses": 0,
            "h2h_draws": 0,
            "payout_minor_units": None,
            "created_at": now,
        }
        try:
            result = await _db.db.league_entries.insert_one(entry_doc)
        except DuplicateKeyError:
            await self._release_slot(oid)
            return violation(
                LeagueErrorCode.DUPLICATE_ENTRY,
                "Team is already in this league.",
                league_id=league.id,
                linked_team_id=linked_team_id,
            )
        except BaseException:
            await asyncio.shield(self._release_slot(oid))
            raise

        entry_doc["_id"] = result.inserted_id
        return entry_from_doc(entry_doc)

    async def _release_slot(self, oid: ObjectId) -> None:
        await _db.db.leagues.update_one(
            {"_id": oid, "current_team_count": {"$gt": 0}},
            {"$inc": {"current_team_count": -1}, "$set": {"updated_at": utcnow()}},
        )
        logger.info("Released reserved slot on league %s", oid)

    async def _reservation_failure(self, league: League) -> LeagueRuleViolation:
        current = await self.get_league(league.id)
        if current is None:
            return violation(
                LeagueErrorCode.LEAGUE_NOT_FOUND, "League not found.", league_id=league.id,
            )
        if current.league_state != LeagueState.OPEN_FOR_ENTRY:
            return violation(
                LeagueErrorCode.LEAGUE_NOT_OPEN,
                "League is not open for entries.",
                league_id=league.id,
                league_state=current.league_state.value,
            )
        return violation(
            LeagueErrorCode.LEAGUE_FULL,
            "League is full.",
            league_id=league.id,
            max_teams=current.max_teams,
            current_team_count=current.current_team_count,
        )

    async def save_entries(
        self, league_id: str, entries: list[Entry], final: bool = False,
    ) -> int | None:
        """Persist points/ranks and publish a new standings snapshot.

        Entry documents are updated first; the single-document snapshot swap
        is what readers see, so a read never mixes old and new ranks.
        Returns the snapshot version.

        ``final`` is the settlement write. It marks the entries and the
        snapshot as final; every later non-final write is a no-op against
        them and returns None, whichever process it comes from.
        """
        now = utcnow()
        entry_guard: dict[str, Any] = {} if final else {"standings_final": {"$ne": True}}
        if entries:
            ops = [
                UpdateOne(
                    {"_id": ObjectId(e.id), "league_id": league_id, **entry_guard},
                    {"$set": {
                        "gameweek_points": e.gameweek_points,
                        "total_points": e.total_points,
                        "h2h_wins": e.h2h_wins,
                        "h2h_losses": e.h2h_losses,
                        "h2h_draws": e.h2h_draws,
                        "rank": e.rank,
                        "previous_rank": e.previous_rank,
                        "standings_final": final,
                        "updated_at": now,
                    }},
                )
                for e in entries
            ]
            await _db.db.league_entries.bulk_write(ops, ordered=False)

        snapshot_filter: dict[str, Any] = {"league_id": league_id}
        if not final:
            snapshot_filter["final"] = {"$ne": True}
        try:
            snapshot = await _db.db.league_standings.find_one_and_update(
                snapshot_filter,
                {
                    "$set": {
                        "rows": [e.model_dump(mode="json", exclude={"created_at"}) for e in entries],
                        "final": final,
                        "updated_at": now,
                    },
                    "$inc": {"version": 1},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # The upsert collided with the final snapshot.
            logger.info("Standings for league %s are final; refresh discarded", league_id)
            return None
        return int(snapshot.get("version", 1))

    async def get_standings(self, league_id: str) -> list[Entry]:
        """Latest published standings; falls back to raw entries before the first refresh."""
        snapshot = await _db.db.league_standings.find_one({"league_id": league_id})
        if snapshot and snapshot.get("rows") is not None:
            return [Entry.model_validate(row) for row in snapshot["rows"]]
        return await self.get_entries(league_id)

    # ---------- Payouts ----------

    async def save_payouts(self, league_id: str, payouts: list[PayoutRecord]) -> int:
        """Insert payout records once per (league, entry); repeats are ignored."""
        if not payouts:
            return 0
        now = utcnow()
        ops = []
        entry_ops = []
        for p in payouts:
            doc = p.model_dump(mode="json")
            doc.update({"league_id": league_id, "created_at": now, "updated_at": now})
            ops.append(UpdateOne(
                {"league_id": league_id, "entry_id": p.entry_id},
                {"$setOnInsert": doc},
                upsert=True,
            ))
            entry_ops.append(UpdateOne(
                {"_id": ObjectId(p.entry_id), "payout_minor_units": None},
                {"$set": {"payout_minor_units": p.amount_minor_units}},
            ))
        result = await _db.db.league_payouts.bulk_write(ops, ordered=False)
        await _db.db.league_entries.bulk_write(entry_ops, ordered=False)
        return result.upserted_count

    async def get_payouts(self, league_id: str) -> list[PayoutRecord]:
        docs = await _db.db.league_payouts.find(
            {"league_id": league_id},
        ).sort("rank", 1).to_list(length=None)
        return [payout_from_doc(d) for d in docs]

    async def get_undelivered_payouts(self, limit: int = 200) -> list[PayoutRecord]:
        docs = await _db.db.league_payouts.find({
            "delivery_status": {"$in": [
                PayoutDeliveryStatus.PENDING.value, PayoutDeliveryStatus.FAILED.value,
            ]},
            "amount_minor_units": {"$gt": 0},
        }).sort("updated_at", 1).to_list(length=limit)
        return [payout_from_doc(d) for d in docs]

    async def update_payout_delivery(
        self,
        league_id: str,
        entry_id: str,
        status: PayoutDeliveryStatus,
        error: str | None = None,
    ) -> None:
        await _db.db.league_payouts.update_one(
            {"league_id": league_id, "entry_id": entry_id},
            {
                "$set": {
                    "delivery_status": status.value,
                    "last_error": error,
                    "updated_at": utcnow(),
                },
                "$inc": {"attempts": 1},
            },
        )


league_repository = LeagueRepository()
