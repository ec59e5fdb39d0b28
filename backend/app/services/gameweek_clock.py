"""Gameweek clock collaborator. Reads the snapshot published by the FPL sync.

The sync job (outside this service) upserts one ``gameweek_state`` document
per gameweek plus a ``current`` pointer document.
"""

import logging
from typing import Optional

import app.database as _db
from app.services.league_state_machine import GameweekStatus

logger = logging.getLogger("phantacci.gameweek_clock")

_CURRENT_ID = "current"


async def get_current_gameweek() -> int:
    """Current gameweek number; 0 before the season's first deadline."""
    doc = await _db.db.gameweek_state.find_one({"_id": _CURRENT_ID})
    if not doc:
        logger.warning("No current gameweek published yet; assuming pre-season")
        return 0
    return int(doc["gameweek"])


async def get_gameweek_status(gameweek: int) -> Optional[GameweekStatus]:
    doc = await _db.db.gameweek_state.find_one({"_id": f"gw:{gameweek}"})
    if not doc:
        return None
    return GameweekStatus(
        gameweek=gameweek,
        first_kickoff_at=doc.get("first_kickoff_at"),
        any_in_progress=bool(doc.get("any_in_progress")),
        last_fixture_finished=bool(doc.get("last_fixture_finished")),
        data_checked=bool(doc.get("data_checked")),
    )
