"""
backend/app/routers/leagues.py

Purpose:
    Public league endpoints: creation, joining with a linked team, standings,
    knockout bracket sizing and prize templates. Rule violations are returned
    as structured HTTP errors carrying the violated rule's code and details.

Dependencies:
    - app.services.league_orchestrator
    - app.services.league_creation_service
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.models.league import (
    JoinLeagueRequest,
    LeagueCreate,
    LeagueFormat,
    StandingsRow,
)
from app.models.league_errors import LeagueErrorCode, LeagueRuleViolation
from app.services.auth_service import get_current_user, is_admin
from app.services.bracket_generator import max_knockout_rounds, round_sizes
from app.services.gameweek_clock import get_current_gameweek
from app.services.league_creation_service import create_league
from app.services.league_orchestrator import league_orchestrator
from app.services.league_repository import league_repository
from app.services.prize_engine import compute_prize_pool, prize_templates
from app.services.standings_calculator import rank_movement

router = APIRouter(prefix="/api/leagues", tags=["leagues"])

_STATUS_BY_CODE = {
    LeagueErrorCode.LEAGUE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LeagueErrorCode.TEAM_NOT_OWNED: status.HTTP_404_NOT_FOUND,
    LeagueErrorCode.LEAGUE_FULL: status.HTTP_409_CONFLICT,
    LeagueErrorCode.DUPLICATE_ENTRY: status.HTTP_409_CONFLICT,
    LeagueErrorCode.ALREADY_FINALIZED: status.HTTP_409_CONFLICT,
    LeagueErrorCode.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
}


def raise_for_violation(v: LeagueRuleViolation) -> None:
    raise HTTPException(
        _STATUS_BY_CODE.get(v.code, status.HTTP_400_BAD_REQUEST),
        v.model_dump(mode="json"),
    )


@router.get("/prize-templates")
async def list_prize_templates():
    return {"items": prize_templates()}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create(body: LeagueCreate, user=Depends(get_current_user)):
    result = await create_league(
        body,
        creator_id=str(user["_id"]),
        current_gameweek=await get_current_gameweek(),
        is_admin=is_admin(user),
    )
    if result.error:
        raise_for_violation(result.error)
    return result.league.model_dump(mode="json")


@router.get("/{league_id}")
async def get_league(league_id: str):
    league = await league_repository.get_league(league_id)
    if not league:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "League not found.")
    pool = compute_prize_pool(
        league.entry_type,
        league.entry_fee_minor_units,
        league.current_team_count,
        league.platform_fee_percent,
    )
    data = league.model_dump(mode="json")
    data["prize_pool_minor_units"] = pool.distributable_minor_units
    return data


@router.post("/{league_id}/join", status_code=status.HTTP_201_CREATED)
async def join(league_id: str, body: JoinLeagueRequest, user=Depends(get_current_user)):
    result = await league_orchestrator.join_league(
        league_id,
        body.linked_team_id,
        str(user["_id"]),
        await get_current_gameweek(),
    )
    if result.error:
        raise_for_violation(result.error)
    return result.entry.model_dump(mode="json")


@router.get("/{league_id}/standings", response_model=list[StandingsRow])
async def standings(league_id: str):
    entries = await league_repository.get_standings(league_id)
    return [
        StandingsRow(
            entry_id=e.id,
            linked_team_id=e.linked_team_id,
            user_id=e.user_id,
            rank=e.rank,
            previous_rank=e.previous_rank,
            movement=rank_movement(e),
            gameweek_points=e.gameweek_points,
            total_points=e.total_points,
            h2h_wins=e.h2h_wins,
            h2h_losses=e.h2h_losses,
            h2h_draws=e.h2h_draws,
        )
        for e in entries
    ]


@router.get("/{league_id}/bracket")
async def bracket(league_id: str):
    league = await league_repository.get_league(league_id)
    if not league:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "League not found.")
    if league.format != LeagueFormat.HEAD_TO_HEAD:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "League has no knockout bracket.")

    teams = league.current_team_count
    allowed = max_knockout_rounds(teams)
    # Rounds were checked against max_teams; a part-filled league plays fewer.
    rounds = round_sizes(teams, min(league.knockout_rounds or allowed, allowed))
    return {
        "team_count": teams,
        "max_rounds": allowed,
        "rounds": [
            {"round": r.round, "teams_in": r.teams_in, "teams_out": r.teams_out}
            for r in rounds
        ],
    }


@router.get("/{league_id}/payouts")
async def payouts(league_id: str):
    records = await league_repository.get_payouts(league_id)
    return {"items": [r.model_dump(mode="json") for r in records]}
