"""Admin league operations: lifecycle events, scoring refresh, payout retries."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.models.league import ScoreUpdate
from app.routers.leagues import raise_for_violation
from app.services.auth_service import get_admin_user
from app.services.league_orchestrator import league_orchestrator
from app.services.league_state_machine import LifecycleEvent

router = APIRouter(prefix="/api/admin/leagues", tags=["admin"])


class LifecycleEventRequest(BaseModel):
    event: LifecycleEvent


class StandingsRefreshRequest(BaseModel):
    updates: list[ScoreUpdate] = []


@router.post("/{league_id}/lifecycle")
async def lifecycle_event(
    league_id: str, body: LifecycleEventRequest, admin=Depends(get_admin_user),
):
    result = await league_orchestrator.handle_lifecycle_event(league_id, body.event)
    if result.error:
        raise_for_violation(result.error)
    if result.finalization and result.finalization.error:
        raise_for_violation(result.finalization.error)
    return result.model_dump(mode="json")


@router.post("/{league_id}/finalize")
async def finalize(league_id: str, admin=Depends(get_admin_user)):
    result = await league_orchestrator.finalize_league(league_id)
    if result.error:
        raise_for_violation(result.error)
    return result.model_dump(mode="json")


@router.post("/{league_id}/standings/refresh")
async def refresh_standings(
    league_id: str, body: StandingsRefreshRequest, admin=Depends(get_admin_user),
):
    result = await league_orchestrator.refresh_standings(league_id, body.updates)
    if result.error:
        raise_for_violation(result.error)
    return {"league_id": league_id, "version": result.version, "entries": len(result.entries)}


@router.post("/{league_id}/payouts/retry")
async def retry_payouts(league_id: str, admin=Depends(get_admin_user)):
    report = await league_orchestrator.dispatch_credits(league_id)
    return report.model_dump()
