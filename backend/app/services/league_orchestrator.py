"""
backend/app/services/league_orchestrator.py

Purpose:
    Composes entry validation, standings and prize distribution into the
    league workflows: join, scoring refresh, lifecycle transitions and
    one-shot finalization with per-record wallet credit delivery.

Concurrency:
    - Admissions, standings refreshes and lifecycle transitions (settlement
      included) are serialized per league with an in-process asyncio.Lock;
      the repository's guarded capacity reservation keeps the limit across
      processes.
    - Settlement writes the final standings first. The repository refuses
      any later refresh, so no other process can change a finalized table.
    - Finalization only runs for the caller that wins the CAS into FINALIZED.
      Payout persistence and wallet credits are idempotent, so a resumed or
      retried settlement never duplicates records or money.

Dependencies:
    - app.services.league_repository
    - app.services.wallet_service
    - app.services.alert_service
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from pydantic import BaseModel, Field

from app.models.league import (
    Entry,
    League,
    LeagueState,
    PayoutDeliveryStatus,
    PayoutRecord,
    ScoreUpdate,
)
from app.models.league_errors import (
    LeagueErrorCode,
    LeagueRuleError,
    LeagueRuleViolation,
    violation,
)
from app.services import alert_service, wallet_service
from app.services.entry_validator import validate_entry
from app.services.league_repository import LeagueRepository, league_repository
from app.services.league_state_machine import (
    LifecycleEvent,
    events_towards,
    is_terminal,
    next_state,
)
from app.services.prize_engine import compute_payouts, compute_prize_pool
from app.services.standings_calculator import rank_entries, standings_key_for

logger = logging.getLogger("phantacci.league_orchestrator")

AlertFn = Callable[..., Awaitable[None]]


# ---------- Results ----------

class JoinResult(BaseModel):
    entry: Optional[Entry] = None
    error: Optional[LeagueRuleViolation] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StandingsResult(BaseModel):
    league_id: str
    version: int = 0
    entries: list[Entry] = Field(default_factory=list)
    error: Optional[LeagueRuleViolation] = None


class DeliveryReport(BaseModel):
    credited: int = 0
    failed: int = 0
    skipped: int = 0


class FinalizationResult(BaseModel):
    league_id: str
    pool_minor_units: int = 0
    payouts: list[PayoutRecord] = Field(default_factory=list)
    delivery: DeliveryReport = Field(default_factory=DeliveryReport)
    error: Optional[LeagueRuleViolation] = None


class TransitionResult(BaseModel):
    league_id: str
    previous_state: Optional[LeagueState] = None
    current_state: Optional[LeagueState] = None
    changed: bool = False
    finalization: Optional[FinalizationResult] = None
    error: Optional[LeagueRuleViolation] = None


def payout_idempotency_key(league_id: str, entry_id: str) -> str:
    return f"league:{league_id}:entry:{entry_id}"


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _not_found(league_id: str) -> LeagueRuleViolation:
    return violation(LeagueErrorCode.LEAGUE_NOT_FOUND, "League not found.", league_id=league_id)


def apply_score_updates(entries: Iterable[Entry], updates: Iterable[ScoreUpdate]) -> list[Entry]:
    """Overlay externally supplied points onto entries; unknown ids are ignored."""
    by_id = {u.entry_id: u for u in updates}
    out: list[Entry] = []
    for entry in entries:
        update = by_id.get(entry.id)
        if update is None:
            out.append(entry)
            continue
        fields = update.model_dump(exclude={"entry_id"}, exclude_none=True)
        out.append(entry.model_copy(update=fields))
    return out


class LeagueOrchestrator:
    def __init__(
        self,
        repository: LeagueRepository = league_repository,
        wallet: Any = wallet_service,
        alert: AlertFn = alert_service.raise_operator_alert,
    ):
        self.repository = repository
        self.wallet = wallet
        self.alert = alert
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, league_id: str) -> asyncio.Lock:
        if league_id not in self._locks:
            self._locks[league_id] = asyncio.Lock()
        return self._locks[league_id]

    def _forget_lock(self, league_id: str) -> None:
        """Finalized leagues take no more writes; their lock can go."""
        self._locks.pop(league_id, None)

    # ---------- Join ----------

    async def join_league(
        self, league_id: str, linked_team_id: str, user_id: str, current_gameweek: int,
    ) -> JoinResult:
        team = await self.repository.get_linked_team(linked_team_id)
        if team is None or team.owner_user_id != user_id:
            return JoinResult(error=violation(
                LeagueErrorCode.TEAM_NOT_OWNED,
                "Linked team not found for this account.",
                linked_team_id=linked_team_id,
            ))

        async with self.get_lock(league_id):
            league = await self.repository.get_league(league_id)
            if league is None:
                return JoinResult(error=_not_found(league_id))

            existing = await self.repository.get_entries(league_id)
            team_count = await self.repository.count_linked_teams(user_id)
            rejected = validate_entry(
                league, linked_team_id, user_id, existing, current_gameweek, team_count,
            )
            if rejected:
                logger.info(
                    "Join rejected: league=%s team=%s code=%s",
                    league_id, linked_team_id, rejected.code.value,
                )
                return JoinResult(error=rejected)

            admitted = await self.repository.admit_entry(league, linked_team_id, user_id)

        if isinstance(admitted, LeagueRuleViolation):
            logger.info(
                "Join rejected at admission: league=%s team=%s code=%s",
                league_id, linked_team_id, admitted.code.value,
            )
            return JoinResult(error=admitted)

        logger.info("Entry %s joined league %s (team %s)", admitted.id, league_id, linked_team_id)
        return JoinResult(entry=admitted)

    # ---------- Standings ----------

    async def refresh_standings(
        self, league_id: str, score_updates: Optional[list[ScoreUpdate]] = None,
    ) -> StandingsResult:
        frozen = StandingsResult(league_id=league_id, error=violation(
            LeagueErrorCode.ALREADY_FINALIZED,
            "Standings are frozen once a league is finalized.",
            league_id=league_id,
        ))
        async with self.get_lock(league_id):
            league = await self.repository.get_league(league_id)
            if league is None:
                return StandingsResult(league_id=league_id, error=_not_found(league_id))
            if is_terminal(league.league_state):
                self._forget_lock(league_id)
                return frozen

            entries = await self.repository.get_entries(league_id)
            if score_updates:
                entries = apply_score_updates(entries, score_updates)
            ranked = rank_entries(entries, standings_key_for(league))
            # Another process may have settled the league since the read above.
            version = await self.repository.save_entries(league_id, ranked)

        if version is None:
            logger.info("Standings refresh discarded: league %s was finalized", league_id)
            return frozen
        logger.debug("Standings refreshed: league=%s entries=%d v%d", league_id, len(ranked), version)
        return StandingsResult(league_id=league_id, version=version, entries=ranked)

    # ---------- Lifecycle ----------

    async def handle_lifecycle_event(self, league_id: str, event: LifecycleEvent) -> TransitionResult:
        """Apply one event under the league lock.

        Holding the lock through settlement keeps a standings refresh from
        landing between the FINALIZED write and the payout computation.
        """
        async with self.get_lock(league_id):
            result = await self._apply_event(league_id, event)
        if result.current_state is not None and is_terminal(result.current_state):
            self._forget_lock(league_id)
        return result

    async def _apply_event(self, league_id: str, event: LifecycleEvent) -> TransitionResult:
        league = await self.repository.get_league(league_id)
        if league is None:
            return TransitionResult(league_id=league_id, error=_not_found(league_id))

        current = league.league_state
        target = next_state(current, event)
        if target == current:
            return TransitionResult(
                league_id=league_id, previous_state=current, current_state=current,
            )

        won = await self.repository.try_transition_state(league_id, current, target)
        if not won:
            fresh = await self.repository.get_league(league_id)
            state = fresh.league_state if fresh else None
            logger.info(
                "Lost transition race: league=%s %s -> %s (now %s)",
                league_id, current.value, target.value, state.value if state else None,
            )
            return TransitionResult(league_id=league_id, previous_state=current, current_state=state)

        result = TransitionResult(
            league_id=league_id, previous_state=current, current_state=target, changed=True,
        )
        if target == LeagueState.FINALIZED:
            result.finalization = await self._settle(league.model_copy(update={"league_state": target}))
        return result

    async def finalize_league(self, league_id: str) -> FinalizationResult:
        """Finalization trigger: WAITING_FOR_UPDATES -> FINALIZED, then settle once."""
        transition = await self.handle_lifecycle_event(
            league_id, LifecycleEvent.CONFIRMATION_WINDOW_ELAPSED,
        )
        if transition.error:
            return FinalizationResult(league_id=league_id, error=transition.error)
        if transition.changed and transition.finalization is not None:
            return transition.finalization
        if transition.current_state == LeagueState.FINALIZED:
            return FinalizationResult(league_id=league_id, error=violation(
                LeagueErrorCode.ALREADY_FINALIZED,
                "League has already been finalized.",
                league_id=league_id,
            ))
        return FinalizationResult(league_id=league_id, error=violation(
            LeagueErrorCode.INVALID_TRANSITION,
            "League is not waiting for final updates.",
            league_id=league_id,
            league_state=transition.current_state.value if transition.current_state else None,
        ))

    async def sync_lifecycle(self, league_id: str, target: LeagueState) -> list[TransitionResult]:
        """Feed the events that move a league forward to ``target``."""
        league = await self.repository.get_league(league_id)
        if league is None:
            return [TransitionResult(league_id=league_id, error=_not_found(league_id))]
        results = []
        for event in events_towards(league.league_state, target):
            result = await self.handle_lifecycle_event(league_id, event)
            results.append(result)
            if not result.changed:
                break
        return results

    # ---------- Settlement ----------

    async def _settle(self, league: League) -> FinalizationResult:
        entries = await self.repository.get_entries(league.id)
        ranked = rank_entries(entries, standings_key_for(league), carry_previous=False)
        # Freeze the table the payouts are computed from.
        await self.repository.save_entries(league.id, ranked, final=True)
        pool = compute_prize_pool(
            league.entry_type,
            league.entry_fee_minor_units,
            len(ranked),
            league.platform_fee_percent,
        ).distributable_minor_units
        result = FinalizationResult(league_id=league.id, pool_minor_units=pool)

        if pool <= 0 or not ranked:
            await self.repository.mark_payouts_computed(league.id)
            logger.info("League %s finalized without prize pool", league.id)
            return result

        try:
            payouts = compute_payouts(pool, ranked, league.prize_distribution)
        except LeagueRuleError as exc:
            await self.alert(
                kind="PRIZE_MODEL_INTEGRITY",
                target_id=league.id,
                message=f"Prize model rejected at finalization: {exc.violation.message}",
                metadata={"pool_minor_units": pool, **exc.violation.details},
            )
            result.error = exc.violation
            return result

        await self.repository.save_payouts(league.id, payouts)
        await self.repository.mark_payouts_computed(league.id)
        logger.info(
            "League %s payouts computed: %d records, pool=%d",
            league.id, len(payouts), pool,
        )

        result.payouts = payouts
        result.delivery = await self.dispatch_credits(league.id, payouts, league.name)
        return result

    async def dispatch_credits(
        self,
        league_id: str,
        payouts: Optional[list[PayoutRecord]] = None,
        league_name: Optional[str] = None,
    ) -> DeliveryReport:
        """Credit each payout independently; one failure never blocks the rest."""
        if payouts is None:
            payouts = await self.repository.get_payouts(league_id)
        report = DeliveryReport()

        for payout in payouts:
            if payout.amount_minor_units <= 0 or payout.delivery_status == PayoutDeliveryStatus.CREDITED:
                report.skipped += 1
                continue
            reason = f"Prize for {_ordinal(payout.rank)} place in {league_name or 'league ' + league_id}"
            try:
                await self.wallet.credit(
                    payout.user_id,
                    payout.amount_minor_units,
                    reason,
                    payout_idempotency_key(league_id, payout.entry_id),
                )
            except Exception as exc:
                logger.warning(
                    "Wallet credit failed: league=%s entry=%s amount=%d: %s",
                    league_id, payout.entry_id, payout.amount_minor_units, exc,
                )
                payout.delivery_status = PayoutDeliveryStatus.FAILED
                payout.last_error = str(exc)
                await self.repository.update_payout_delivery(
                    league_id, payout.entry_id, PayoutDeliveryStatus.FAILED, str(exc),
                )
                report.failed += 1
                continue

            payout.delivery_status = PayoutDeliveryStatus.CREDITED
            await self.repository.update_payout_delivery(
                league_id, payout.entry_id, PayoutDeliveryStatus.CREDITED,
            )
            report.credited += 1

        if report.failed:
            logger.warning(
                "League %s credit delivery: %d credited, %d failed",
                league_id, report.credited, report.failed,
            )
        return report

    async def retry_undelivered_credits(self, limit: int = 200) -> DeliveryReport:
        pending = await self.repository.get_undelivered_payouts(limit)
        by_league: dict[str, list[PayoutRecord]] = {}
        for payout in pending:
            by_league.setdefault(payout.league_id, []).append(payout)

        total = DeliveryReport()
        for league_id, payouts in by_league.items():
            league = await self.repository.get_league(league_id)
            report = await self.dispatch_credits(league_id, payouts, league.name if league else None)
            total.credited += report.credited
            total.failed += report.failed
            total.skipped += report.skipped
        return total

    async def resume_unfinished_finalizations(self) -> list[FinalizationResult]:
        """Settle leagues that reached FINALIZED but never stored their payouts."""
        results = []
        for league in await self.repository.find_finalized_without_payouts():
            logger.info("Resuming settlement for finalized league %s", league.id)
            async with self.get_lock(league.id):
                results.append(await self._settle(league))
            self._forget_lock(league.id)
        return results


league_orchestrator = LeagueOrchestrator()
