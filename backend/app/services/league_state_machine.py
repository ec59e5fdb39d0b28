"""
backend/app/services/league_state_machine.py

Purpose:
    Gameweek-bound league lifecycle:
    OPEN_FOR_ENTRY -> IN_PROGRESS -> WAITING_FOR_UPDATES -> FINALIZED.
    Transitions are pure; persistence and the FINALIZED side effects live in
    the league orchestrator.

Dependencies:
    - app.models.league
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from app.models.league import LeagueState
from app.utils import ensure_utc


class LifecycleEvent(str, Enum):
    GAMEWEEK_DEADLINE_PASSED = "GAMEWEEK_DEADLINE_PASSED"
    ALL_MATCHES_COMPLETE = "ALL_MATCHES_COMPLETE"
    CONFIRMATION_WINDOW_ELAPSED = "CONFIRMATION_WINDOW_ELAPSED"


_TRANSITIONS: dict[tuple[LeagueState, LifecycleEvent], LeagueState] = {
    (LeagueState.OPEN_FOR_ENTRY, LifecycleEvent.GAMEWEEK_DEADLINE_PASSED): LeagueState.IN_PROGRESS,
    (LeagueState.IN_PROGRESS, LifecycleEvent.ALL_MATCHES_COMPLETE): LeagueState.WAITING_FOR_UPDATES,
    (LeagueState.WAITING_FOR_UPDATES, LifecycleEvent.CONFIRMATION_WINDOW_ELAPSED): LeagueState.FINALIZED,
}

_ORDER = [
    LeagueState.OPEN_FOR_ENTRY,
    LeagueState.IN_PROGRESS,
    LeagueState.WAITING_FOR_UPDATES,
    LeagueState.FINALIZED,
]
_EVENT_INTO = {target: event for (_, event), target in _TRANSITIONS.items()}


def next_state(current: LeagueState, event: LifecycleEvent) -> LeagueState:
    """Apply one clock event. Pairs without a transition are a no-op."""
    return _TRANSITIONS.get((current, event), current)


def accepts_entries(state: LeagueState) -> bool:
    return state == LeagueState.OPEN_FOR_ENTRY


def is_terminal(state: LeagueState) -> bool:
    return state == LeagueState.FINALIZED


@dataclass(frozen=True)
class GameweekStatus:
    """Fixture snapshot for one gameweek, as published by the clock collaborator."""
    gameweek: int
    first_kickoff_at: Optional[datetime] = None
    any_in_progress: bool = False
    last_fixture_finished: bool = False
    data_checked: bool = False


def state_from_gameweek_status(status: GameweekStatus, now: datetime) -> LeagueState:
    """Derive the lifecycle state a league on this gameweek should be in.

    FINALIZED needs both the last fixture finished and the provider's
    data-checked flag; a finished gameweek without the flag is still
    WAITING_FOR_UPDATES because bonus points may be revised.
    """
    complete = status.last_fixture_finished and status.data_checked
    started = status.first_kickoff_at is not None and ensure_utc(now) >= ensure_utc(status.first_kickoff_at)

    if complete:
        return LeagueState.FINALIZED
    if not started:
        return LeagueState.OPEN_FOR_ENTRY
    if status.any_in_progress:
        return LeagueState.IN_PROGRESS
    if status.last_fixture_finished:
        return LeagueState.WAITING_FOR_UPDATES
    return LeagueState.IN_PROGRESS


def target_state_for(
    start_status: GameweekStatus,
    end_status: Optional[GameweekStatus],
    now: datetime,
) -> LeagueState:
    """Lifecycle target for a league spanning start..end gameweeks.

    The start gameweek closes entry; only the end gameweek can move the
    league into WAITING_FOR_UPDATES or FINALIZED.
    """
    opening = state_from_gameweek_status(start_status, now)
    if end_status is None or end_status.gameweek == start_status.gameweek:
        return opening
    if opening == LeagueState.OPEN_FOR_ENTRY:
        return opening
    closing = state_from_gameweek_status(end_status, now)
    if closing in (LeagueState.WAITING_FOR_UPDATES, LeagueState.FINALIZED):
        return closing
    return LeagueState.IN_PROGRESS


def events_towards(current: LeagueState, target: LeagueState) -> list[LifecycleEvent]:
    """Events that walk ``current`` forward to ``target``; empty if target is not ahead."""
    start = _ORDER.index(current)
    end = _ORDER.index(target)
    return [_EVENT_INTO[state] for state in _ORDER[start + 1 : end + 1]]
