"""
backend/app/models/league.py

Purpose:
    Pydantic models for paid/free gameweek leagues, their entries and payout
    records. Defines the canonical lifecycle enum, the legacy-status mapping
    applied at the persistence boundary, and the prize distribution tagged
    union dispatched by the prize engine.

Dependencies:
    - enum.Enum
    - pydantic.BaseModel
    - pydantic.Field
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class LeagueFormat(str, Enum):
    CLASSIC = "CLASSIC"
    HEAD_TO_HEAD = "HEAD_TO_HEAD"


class EntryType(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


class LeagueState(str, Enum):
    OPEN_FOR_ENTRY = "OPEN_FOR_ENTRY"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_FOR_UPDATES = "WAITING_FOR_UPDATES"
    FINALIZED = "FINALIZED"


class LegacyLeagueStatus(str, Enum):
    """Status flag carried by league records created before lifecycle states."""
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


_LEGACY_TO_STATE = {
    LegacyLeagueStatus.OPEN: LeagueState.OPEN_FOR_ENTRY,
    LegacyLeagueStatus.IN_PROGRESS: LeagueState.IN_PROGRESS,
    LegacyLeagueStatus.COMPLETED: LeagueState.FINALIZED,
}
_STATE_TO_LEGACY = {state: legacy for legacy, state in _LEGACY_TO_STATE.items()}


def resolve_league_state(
    league_state: str | None, legacy_status: str | None = None,
) -> LeagueState:
    """Collapse the stored lifecycle fields into one canonical state.

    ``league_state`` wins whenever it is set; the legacy ``status`` flag is
    only consulted for older records. A record with neither is still open.
    """
    if league_state:
        return LeagueState(league_state)
    if legacy_status:
        return _LEGACY_TO_STATE[LegacyLeagueStatus(legacy_status)]
    return LeagueState.OPEN_FOR_ENTRY


def legacy_status_for(state: LeagueState) -> LegacyLeagueStatus | None:
    """Legacy flag a not-yet-migrated record would carry for ``state``."""
    return _STATE_TO_LEGACY.get(state)


# ---------- Prize distribution ----------

class TopNDistribution(BaseModel):
    """Fixed percentage table for the top ``n`` ranks (n in 3, 5, 10)."""
    kind: Literal["TOP_N"] = "TOP_N"
    n: int


class PercentageDistribution(BaseModel):
    """Caller-supplied rank -> percentage table; must sum to 100."""
    kind: Literal["PERCENTAGE"] = "PERCENTAGE"
    table: dict[int, float]


class FixedPositionsDistribution(BaseModel):
    """Exact minor-unit amount per rank; must not exceed the pool."""
    kind: Literal["FIXED_POSITIONS"] = "FIXED_POSITIONS"
    amounts: dict[int, int]


class WinnerTakesAllDistribution(BaseModel):
    kind: Literal["WINNER_TAKES_ALL"] = "WINNER_TAKES_ALL"


PrizeDistribution = Annotated[
    Union[
        TopNDistribution,
        PercentageDistribution,
        FixedPositionsDistribution,
        WinnerTakesAllDistribution,
    ],
    Field(discriminator="kind"),
]


# ---------- League ----------

class League(BaseModel):
    id: str
    name: str
    format: LeagueFormat = LeagueFormat.CLASSIC
    entry_type: EntryType = EntryType.FREE
    entry_fee_minor_units: int = 0
    max_teams: int
    current_team_count: int = 0
    start_gameweek: int
    end_gameweek: Optional[int] = None
    prize_distribution: PrizeDistribution = Field(
        default_factory=lambda: TopNDistribution(n=3),
    )
    league_state: LeagueState = LeagueState.OPEN_FOR_ENTRY
    knockout_rounds: Optional[int] = None  # HEAD_TO_HEAD only
    platform_fee_percent: float = 0.0
    creator_id: Optional[str] = None
    league_code: Optional[str] = None
    created_at: Optional[datetime] = None
    soft_finalized_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    payouts_computed_at: Optional[datetime] = None

    @property
    def is_single_gameweek(self) -> bool:
        return self.end_gameweek is None or self.end_gameweek == self.start_gameweek


class LeagueCreate(BaseModel):
    """Request body for creating a league."""
    name: str = Field(min_length=1, max_length=80)
    format: LeagueFormat = LeagueFormat.CLASSIC
    entry_type: EntryType = EntryType.PAID
    entry_fee_minor_units: int = Field(0, ge=0)
    max_teams: int
    start_gameweek: int
    end_gameweek: Optional[int] = None
    knockout_rounds: Optional[int] = None
    prize_distribution: PrizeDistribution = Field(
        default_factory=lambda: TopNDistribution(n=3),
    )


# ---------- Linked teams ----------

class LinkedTeam(BaseModel):
    """An external FPL team linked to a user account (owned elsewhere)."""
    id: str
    fpl_team_id: int
    owner_user_id: str
    team_name: Optional[str] = None


# ---------- Entries ----------

class Entry(BaseModel):
    """One linked team's participation in one league."""
    id: str
    league_id: str
    linked_team_id: str
    user_id: str
    gameweek_points: int = 0
    total_points: int = 0
    rank: Optional[int] = None
    previous_rank: Optional[int] = None
    h2h_wins: int = 0
    h2h_losses: int = 0
    h2h_draws: int = 0
    payout_minor_units: Optional[int] = None
    created_at: Optional[datetime] = None


class JoinLeagueRequest(BaseModel):
    linked_team_id: str


class ScoreUpdate(BaseModel):
    """Points supplied by the scoring collaborator for one entry."""
    entry_id: str
    gameweek_points: Optional[int] = None
    total_points: Optional[int] = None
    h2h_wins: Optional[int] = None
    h2h_losses: Optional[int] = None
    h2h_draws: Optional[int] = None


class StandingsRow(BaseModel):
    entry_id: str
    linked_team_id: str
    user_id: str
    rank: Optional[int] = None
    previous_rank: Optional[int] = None
    movement: int = 0
    gameweek_points: int = 0
    total_points: int = 0
    h2h_wins: int = 0
    h2h_losses: int = 0
    h2h_draws: int = 0


# ---------- Payouts ----------

class PayoutDeliveryStatus(str, Enum):
    PENDING = "PENDING"
    CREDITED = "CREDITED"
    FAILED = "FAILED"


class PayoutRecord(BaseModel):
    entry_id: str
    rank: int
    amount_minor_units: int
    user_id: Optional[str] = None
    league_id: Optional[str] = None
    delivery_status: PayoutDeliveryStatus = PayoutDeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
