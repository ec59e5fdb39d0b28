"""Advance league lifecycles from the published gameweek snapshots."""

import logging

from app.services.gameweek_clock import get_gameweek_status
from app.services.league_orchestrator import league_orchestrator
from app.services.league_repository import league_repository
from app.services.league_state_machine import GameweekStatus, target_state_for
from app.utils import utcnow
from app.workers._state import set_synced

logger = logging.getLogger("phantacci.lifecycle_tick")

_STATE_KEY = "lifecycle_tick"


async def advance_league_lifecycles() -> None:
    """Feed lifecycle events to every league that is not finalized yet.

    Smart sleep: leagues whose gameweek has no snapshot yet are skipped.
    One league failing never stops the tick for the others.
    """
    now = utcnow()
    leagues = await league_repository.find_unfinalized_leagues()
    moved = 0

    for league in leagues:
        start_status = await get_gameweek_status(league.start_gameweek)
        if start_status is None:
            continue
        end_status = None
        if not league.is_single_gameweek:
            # No snapshot yet means the end gameweek has not started.
            end_status = (
                await get_gameweek_status(league.end_gameweek)
                or GameweekStatus(gameweek=league.end_gameweek)
            )

        target = target_state_for(start_status, end_status, now)
        if target == league.league_state:
            continue

        try:
            results = await league_orchestrator.sync_lifecycle(league.id, target)
        except Exception:
            logger.exception("Lifecycle sync failed for league %s", league.id)
            continue
        moved += sum(1 for r in results if r.changed)

    if moved:
        logger.info("Lifecycle tick applied %d transitions", moved)
    await set_synced(_STATE_KEY)
