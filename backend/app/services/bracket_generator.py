"""Head-to-head knockout bracket sizing."""

import math
from dataclasses import dataclass

from app.models.league_errors import LeagueErrorCode, rule_error

# Product cap: brackets never run more than three knockout rounds,
# however many teams enter.
MAX_KNOCKOUT_ROUNDS = 3


@dataclass(frozen=True)
class KnockoutRound:
    round: int
    teams_in: int
    teams_out: int  # survivors advancing from this round


def max_knockout_rounds(team_count: int) -> int:
    if team_count >= 8:
        return MAX_KNOCKOUT_ROUNDS
    if team_count >= 4:
        return 2
    return 1


def validate_knockout_rounds(team_count: int, rounds: int) -> None:
    allowed = max_knockout_rounds(team_count)
    if rounds < 1 or rounds > allowed:
        raise rule_error(
            LeagueErrorCode.INVALID_KNOCKOUT_ROUNDS,
            f"Knockout rounds must be between 1 and {allowed} for {team_count} teams.",
            team_count=team_count,
            requested_rounds=rounds,
            max_rounds=allowed,
        )


def round_sizes(team_count: int, rounds: int) -> list[KnockoutRound]:
    """Teams entering and surviving each round; survivors = ceil(teams_in / 2)."""
    validate_knockout_rounds(team_count, rounds)
    sizes: list[KnockoutRound] = []
    teams_in = team_count
    for number in range(1, rounds + 1):
        teams_out = math.ceil(teams_in / 2)
        sizes.append(KnockoutRound(round=number, teams_in=teams_in, teams_out=teams_out))
        teams_in = teams_out
    return sizes
