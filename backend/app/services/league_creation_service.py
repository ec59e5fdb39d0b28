"""League creation: configuration rules for user and admin leagues."""

import logging
import secrets
from typing import Optional

from pydantic import BaseModel

from app.config import settings
from app.models.league import (
    EntryType,
    League,
    LeagueCreate,
    LeagueFormat,
    LeagueState,
)
from app.models.league_errors import (
    LeagueErrorCode,
    LeagueRuleError,
    LeagueRuleViolation,
    violation,
)
from app.services.bracket_generator import validate_knockout_rounds
from app.services.league_repository import LeagueRepository, league_repository
from app.services.prize_engine import compute_prize_pool, validate_distribution
from app.utils import utcnow

logger = logging.getLogger("phantacci.league_creation")

_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_CODE_LENGTH = 6


class CreateLeagueResult(BaseModel):
    league: Optional[League] = None
    error: Optional[LeagueRuleViolation] = None


def generate_league_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))


def _config_error(message: str, **details) -> LeagueRuleViolation:
    return violation(LeagueErrorCode.INVALID_LEAGUE_CONFIG, message, **details)


def check_league_config(
    payload: LeagueCreate, current_gameweek: int, is_admin: bool,
) -> Optional[LeagueRuleViolation]:
    """First failed creation rule, or None."""
    if not is_admin and payload.entry_type != EntryType.PAID:
        return _config_error("User-created leagues must be paid leagues.")

    if payload.entry_type == EntryType.PAID and not is_admin:
        low = settings.USER_LEAGUE_MIN_ENTRY_FEE_MINOR
        high = settings.USER_LEAGUE_MAX_ENTRY_FEE_MINOR
        if not low <= payload.entry_fee_minor_units <= high:
            return _config_error(
                "Entry fee is outside the allowed range.",
                entry_fee_minor_units=payload.entry_fee_minor_units,
                min_minor_units=low,
                max_minor_units=high,
            )
    if payload.entry_type == EntryType.FREE and payload.entry_fee_minor_units != 0:
        return _config_error("Free leagues cannot charge an entry fee.")

    if not settings.LEAGUE_MIN_TEAMS <= payload.max_teams <= settings.LEAGUE_MAX_TEAMS:
        return _config_error(
            f"Maximum teams must be between {settings.LEAGUE_MIN_TEAMS} and {settings.LEAGUE_MAX_TEAMS}.",
            max_teams=payload.max_teams,
        )

    if payload.start_gameweek <= current_gameweek:
        return _config_error(
            "Start gameweek must be in the future.",
            start_gameweek=payload.start_gameweek,
            current_gameweek=current_gameweek,
        )
    if payload.end_gameweek is not None:
        if payload.end_gameweek <= payload.start_gameweek:
            return _config_error(
                "End gameweek must be after start gameweek.",
                start_gameweek=payload.start_gameweek,
                end_gameweek=payload.end_gameweek,
            )
        if payload.end_gameweek > settings.SEASON_LAST_GAMEWEEK:
            return _config_error(
                f"End gameweek cannot exceed {settings.SEASON_LAST_GAMEWEEK}.",
                end_gameweek=payload.end_gameweek,
            )

    try:
        if payload.format == LeagueFormat.HEAD_TO_HEAD:
            validate_knockout_rounds(payload.max_teams, payload.knockout_rounds or 0)
        # Checked against a full league; the orchestrator re-checks with the
        # real pool at finalization.
        pool = compute_prize_pool(
            payload.entry_type,
            payload.entry_fee_minor_units,
            payload.max_teams,
            settings.DEFAULT_PLATFORM_FEE_PERCENT,
        ).distributable_minor_units
        validate_distribution(payload.prize_distribution, pool)
    except LeagueRuleError as exc:
        return exc.violation

    return None


async def create_league(
    payload: LeagueCreate,
    creator_id: str,
    current_gameweek: int,
    is_admin: bool = False,
    repository: LeagueRepository = league_repository,
) -> CreateLeagueResult:
    rejected = check_league_config(payload, current_gameweek, is_admin)
    if rejected:
        logger.info("League creation rejected for %s: %s", creator_id, rejected.code.value)
        return CreateLeagueResult(error=rejected)

    league = League(
        id="",
        name=payload.name,
        format=payload.format,
        entry_type=payload.entry_type,
        entry_fee_minor_units=payload.entry_fee_minor_units,
        max_teams=payload.max_teams,
        start_gameweek=payload.start_gameweek,
        end_gameweek=payload.end_gameweek,
        prize_distribution=payload.prize_distribution,
        league_state=LeagueState.OPEN_FOR_ENTRY,
        knockout_rounds=payload.knockout_rounds if payload.format == LeagueFormat.HEAD_TO_HEAD else None,
        platform_fee_percent=settings.DEFAULT_PLATFORM_FEE_PERCENT,
        creator_id=creator_id,
        league_code=generate_league_code(),
        created_at=utcnow(),
    )
    stored = await repository.insert_league(league)
    logger.info("League created: %s (%s) by %s", stored.id, stored.league_code, creator_id)
    return CreateLeagueResult(league=stored)
