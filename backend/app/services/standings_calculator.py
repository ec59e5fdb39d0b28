"""League standings: ordering and standard competition ranking ("1,2,2,4")."""

from enum import Enum
from typing import Callable, Iterable

from app.models.league import Entry, League, LeagueFormat

H2H_WIN_POINTS = 3
H2H_DRAW_POINTS = 1


class StandingsKey(str, Enum):
    GAMEWEEK_POINTS = "GAMEWEEK_POINTS"
    TOTAL_POINTS = "TOTAL_POINTS"
    HEAD_TO_HEAD = "HEAD_TO_HEAD"


def standings_key_for(league: League) -> StandingsKey:
    """Head-to-head leagues rank on match points, single-gameweek classic
    leagues on gameweek points, season-long classic leagues on totals."""
    if league.format == LeagueFormat.HEAD_TO_HEAD:
        return StandingsKey.HEAD_TO_HEAD
    if league.is_single_gameweek:
        return StandingsKey.GAMEWEEK_POINTS
    return StandingsKey.TOTAL_POINTS


def h2h_points(entry: Entry) -> int:
    return entry.h2h_wins * H2H_WIN_POINTS + entry.h2h_draws * H2H_DRAW_POINTS


def _score_fn(key: StandingsKey) -> Callable[[Entry], tuple]:
    if key == StandingsKey.GAMEWEEK_POINTS:
        return lambda e: (e.gameweek_points,)
    if key == StandingsKey.TOTAL_POINTS:
        return lambda e: (e.total_points,)
    return lambda e: (h2h_points(e), e.total_points)


def rank_entries(
    entries: Iterable[Entry], key: StandingsKey, carry_previous: bool = True,
) -> list[Entry]:
    """Return the entries in standings order with ``rank`` populated.

    Equal scores share a rank and the next distinct score skips ahead by the
    size of the tie. Python's sort is stable, so tied entries keep their
    incoming order. The prior ``rank`` becomes ``previous_rank``; it never
    takes part in the comparison. With ``carry_previous=False`` the stored
    ``previous_rank`` is left alone, so settlement can rank the final table
    without erasing the last movement. Inputs are not mutated.
    """
    score = _score_fn(key)
    ordered = sorted(entries, key=score, reverse=True)

    ranked: list[Entry] = []
    last_score = None
    current_rank = 0
    for position, entry in enumerate(ordered, start=1):
        entry_score = score(entry)
        if entry_score != last_score:
            current_rank = position
            last_score = entry_score
        previous = entry.previous_rank
        if carry_previous and entry.rank is not None:
            previous = entry.rank
        ranked.append(entry.model_copy(update={"rank": current_rank, "previous_rank": previous}))
    return ranked


def rank_movement(entry: Entry) -> int:
    """Positive when the entry climbed since the previous computation."""
    if entry.rank is None or entry.previous_rank is None:
        return 0
    return entry.previous_rank - entry.rank
