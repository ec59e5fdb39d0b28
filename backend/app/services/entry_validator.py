"""Admission rules for a (linked team, league) pairing.

Pure checks only; the capacity counter is incremented by the repository
together with the entry insert.
"""

from typing import Iterable, Optional

from app.config import settings
from app.models.league import Entry, League
from app.models.league_errors import LeagueErrorCode, LeagueRuleViolation, violation
from app.services.league_state_machine import accepts_entries


def validate_entry(
    league: League,
    linked_team_id: str,
    requester_user_id: str,
    existing_entries: Iterable[Entry],
    current_gameweek: int,
    requester_linked_team_count: int,
) -> Optional[LeagueRuleViolation]:
    """Return the first failed admission rule, or None if the team may join.

    Order matters: state, capacity, gameweek window, duplicate, team limit.
    """
    if not accepts_entries(league.league_state):
        return violation(
            LeagueErrorCode.LEAGUE_NOT_OPEN,
            "League is not open for entries.",
            league_id=league.id,
            league_state=league.league_state.value,
        )

    if league.current_team_count >= league.max_teams:
        return violation(
            LeagueErrorCode.LEAGUE_FULL,
            "League is full.",
            league_id=league.id,
            max_teams=league.max_teams,
            current_team_count=league.current_team_count,
        )

    if league.start_gameweek <= current_gameweek:
        return violation(
            LeagueErrorCode.GAMEWEEK_CLOSED,
            "League entry is closed. Its start gameweek has already begun.",
            league_id=league.id,
            start_gameweek=league.start_gameweek,
            current_gameweek=current_gameweek,
        )

    for entry in existing_entries:
        if entry.league_id == league.id and entry.linked_team_id == linked_team_id:
            return violation(
                LeagueErrorCode.DUPLICATE_ENTRY,
                "Team is already in this league.",
                league_id=league.id,
                linked_team_id=linked_team_id,
                entry_id=entry.id,
            )

    limit = settings.MAX_LINKED_TEAMS_PER_USER
    if requester_linked_team_count >= limit:
        return violation(
            LeagueErrorCode.TEAM_LIMIT_EXCEEDED,
            f"An account may hold at most {limit} linked teams.",
            user_id=requester_user_id,
            linked_team_count=requester_linked_team_count,
            limit=limit,
        )

    return None
