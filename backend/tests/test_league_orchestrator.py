"""
backend/tests/test_league_orchestrator.py

Purpose:
    League workflows against an in-memory repository: concurrent admission at
    the capacity limit, one-shot finalization, isolated credit failures, the
    prize-model integrity alert and standings frozen at settlement.
"""

from __future__ import annotations

import asyncio
import itertools

import pytest
from conftest import make_entry, make_league

from app.models.league import (
    Entry,
    EntryType,
    FixedPositionsDistribution,
    LeagueState,
    LinkedTeam,
    PayoutDeliveryStatus,
    ScoreUpdate,
    TopNDistribution,
)
from app.models.league_errors import LeagueErrorCode, violation
from app.services.league_orchestrator import LeagueOrchestrator, payout_idempotency_key
from app.services.league_state_machine import LifecycleEvent
from app.services.standings_calculator import rank_movement
from app.utils import utcnow

LEAGUE_ID = "507f1f77bcf86cd799439011"
_FPL_IDS = itertools.count(1001)


class _FakeRepository:
    """Mirrors the persistence contract; each write is atomic between awaits."""

    def __init__(self, league, entries=(), teams=()):
        self.leagues = {league.id: league}
        self.entries = {league.id: list(entries)}
        self.teams = {t.id: t for t in teams}
        self.team_counts: dict[str, int] = {}
        self.payouts: dict[tuple[str, str], object] = {}
        self.snapshot_version = 0
        self.final_standings: set[str] = set()
        self._next_entry = 0

    async def get_league(self, league_id):
        await asyncio.sleep(0)
        league = self.leagues.get(league_id)
        return league.model_copy() if league else None

    async def get_linked_team(self, linked_team_id):
        return self.teams.get(linked_team_id)

    async def count_linked_teams(self, user_id):
        return self.team_counts.get(user_id, 1)

    async def get_entries(self, league_id):
        await asyncio.sleep(0)
        return [e.model_copy() for e in self.entries.get(league_id, [])]

    async def admit_entry(self, league, linked_team_id, user_id):
        await asyncio.sleep(0)
        stored = self.leagues[league.id]
        if stored.league_state != LeagueState.OPEN_FOR_ENTRY:
            return violation(LeagueErrorCode.LEAGUE_NOT_OPEN, "League is not open for entries.")
        if stored.current_team_count >= stored.max_teams:
            return violation(LeagueErrorCode.LEAGUE_FULL, "League is full.")
        if any(e.linked_team_id == linked_team_id for e in self.entries[league.id]):
            return violation(LeagueErrorCode.DUPLICATE_ENTRY, "Team is already in this league.")
        self.leagues[league.id] = stored.model_copy(
            update={"current_team_count": stored.current_team_count + 1},
        )
        self._next_entry += 1
        entry = Entry(
            id=f"new-{self._next_entry}",
            league_id=league.id,
            linked_team_id=linked_team_id,
            user_id=user_id,
        )
        self.entries[league.id].append(entry)
        return entry

    async def try_transition_state(self, league_id, from_state, to_state):
        await asyncio.sleep(0)
        stored = self.leagues[league_id]
        if stored.league_state != from_state:
            return False
        self.leagues[league_id] = stored.model_copy(update={"league_state": to_state})
        return True

    async def mark_payouts_computed(self, league_id):
        stored = self.leagues[league_id]
        if stored.payouts_computed_at is None:
            self.leagues[league_id] = stored.model_copy(update={"payouts_computed_at": utcnow()})

    async def find_finalized_without_payouts(self, limit=100):
        return [
            league.model_copy()
            for league in self.leagues.values()
            if league.league_state == LeagueState.FINALIZED and league.payouts_computed_at is None
        ]

    async def save_entries(self, league_id, entries, final=False):
        await asyncio.sleep(0)
        if league_id in self.final_standings and not final:
            return None
        self.entries[league_id] = [e.model_copy() for e in entries]
        if final:
            self.final_standings.add(league_id)
        self.snapshot_version += 1
        return self.snapshot_version

    async def save_payouts(self, league_id, payouts):
        inserted = 0
        for p in payouts:
            key = (league_id, p.entry_id)
            if key not in self.payouts:
                self.payouts[key] = p.model_copy()
                inserted += 1
        return inserted

    async def get_payouts(self, league_id):
        rows = [p.model_copy() for (lid, _), p in self.payouts.items() if lid == league_id]
        return sorted(rows, key=lambda p: p.rank)

    async def get_undelivered_payouts(self, limit=200):
        return [
            p.model_copy()
            for p in self.payouts.values()
            if p.delivery_status != PayoutDeliveryStatus.CREDITED and p.amount_minor_units > 0
        ][:limit]

    async def update_payout_delivery(self, league_id, entry_id, status, error=None):
        stored = self.payouts[(league_id, entry_id)]
        stored.delivery_status = status
        stored.last_error = error
        stored.attempts += 1


class _GatedRepository(_FakeRepository):
    """Holds the first entries read until ``release`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reading = asyncio.Event()
        self.release = asyncio.Event()
        self._gated = True

    async def get_entries(self, league_id):
        if self._gated:
            self._gated = False
            self.reading.set()
            await self.release.wait()
        return await super().get_entries(league_id)


class _FakeWallet:
    def __init__(self, failing_users=()):
        self.failing_users = set(failing_users)
        self.credits: dict[str, dict] = {}
        self.calls = 0

    async def credit(self, user_id, amount_minor_units, reason, idempotency_key):
        self.calls += 1
        if user_id in self.failing_users:
            raise RuntimeError("wallet unavailable")
        if idempotency_key not in self.credits:
            self.credits[idempotency_key] = {
                "user_id": user_id,
                "amount_minor_units": amount_minor_units,
                "description": reason,
            }
        return self.credits[idempotency_key]


class _AlertSink:
    def __init__(self):
        self.alerts: list[dict] = []

    async def __call__(self, **kwargs):
        self.alerts.append(kwargs)


def _scored_entries():
    return [
        make_entry("a", gameweek_points=70),
        make_entry("b", gameweek_points=60),
        make_entry("c", gameweek_points=50),
    ]


def _orchestrator(repo, wallet=None, alert=None):
    return LeagueOrchestrator(
        repository=repo, wallet=wallet or _FakeWallet(), alert=alert or _AlertSink(),
    )


def _team(team_id, owner):
    return LinkedTeam(id=team_id, fpl_team_id=next(_FPL_IDS), owner_user_id=owner)


# ---------- Join ----------

@pytest.mark.asyncio
async def test_concurrent_joins_for_last_slot_admit_exactly_one():
    league = make_league(max_teams=2, current_team_count=1)
    repo = _FakeRepository(
        league,
        entries=[make_entry("existing")],
        teams=[_team("t1", "u1"), _team("t2", "u2")],
    )
    orchestrator = _orchestrator(repo)

    results = await asyncio.gather(
        orchestrator.join_league(LEAGUE_ID, "t1", "u1", current_gameweek=9),
        orchestrator.join_league(LEAGUE_ID, "t2", "u2", current_gameweek=9),
    )

    assert sum(r.ok for r in results) == 1
    assert [r.error.code for r in results if not r.ok] == [LeagueErrorCode.LEAGUE_FULL]
    assert repo.leagues[LEAGUE_ID].current_team_count == 2
    assert len(repo.entries[LEAGUE_ID]) == 2


@pytest.mark.asyncio
async def test_capacity_holds_across_orchestrator_instances():
    league = make_league(max_teams=2, current_team_count=1)
    repo = _FakeRepository(
        league,
        entries=[make_entry("existing")],
        teams=[_team("t1", "u1"), _team("t2", "u2")],
    )
    # Separate instances share no lock; the repository reservation decides.
    first, second = _orchestrator(repo), _orchestrator(repo)

    results = await asyncio.gather(
        first.join_league(LEAGUE_ID, "t1", "u1", current_gameweek=9),
        second.join_league(LEAGUE_ID, "t2", "u2", current_gameweek=9),
    )

    assert sum(r.ok for r in results) == 1
    assert repo.leagues[LEAGUE_ID].current_team_count == 2


@pytest.mark.asyncio
async def test_join_rejects_team_owned_by_someone_else():
    repo = _FakeRepository(make_league(), teams=[_team("t1", "owner")])
    result = await _orchestrator(repo).join_league(LEAGUE_ID, "t1", "intruder", current_gameweek=9)
    assert result.error.code == LeagueErrorCode.TEAM_NOT_OWNED
    assert repo.entries[LEAGUE_ID] == []


@pytest.mark.asyncio
async def test_join_after_deadline_is_gameweek_closed():
    repo = _FakeRepository(make_league(start_gameweek=10), teams=[_team("t1", "u1")])
    result = await _orchestrator(repo).join_league(LEAGUE_ID, "t1", "u1", current_gameweek=10)
    assert result.error.code == LeagueErrorCode.GAMEWEEK_CLOSED


@pytest.mark.asyncio
async def test_join_unknown_league():
    repo = _FakeRepository(make_league(), teams=[_team("t1", "u1")])
    result = await _orchestrator(repo).join_league(
        "0000000000000000000000aa", "t1", "u1", current_gameweek=9,
    )
    assert result.error.code == LeagueErrorCode.LEAGUE_NOT_FOUND


@pytest.mark.asyncio
async def test_successful_join_returns_entry():
    repo = _FakeRepository(make_league(), teams=[_team("t1", "u1")])
    result = await _orchestrator(repo).join_league(LEAGUE_ID, "t1", "u1", current_gameweek=9)
    assert result.ok
    assert result.entry.linked_team_id == "t1"
    assert result.entry.user_id == "u1"
    assert repo.leagues[LEAGUE_ID].current_team_count == 1


# ---------- Standings ----------

@pytest.mark.asyncio
async def test_refresh_applies_scores_and_ranks():
    repo = _FakeRepository(make_league(league_state=LeagueState.IN_PROGRESS), entries=_scored_entries())
    result = await _orchestrator(repo).refresh_standings(
        LEAGUE_ID, [ScoreUpdate(entry_id="c", gameweek_points=80)],
    )
    assert result.error is None
    assert [(e.id, e.rank) for e in result.entries] == [("c", 1), ("a", 2), ("b", 3)]
    assert result.version == 1


@pytest.mark.asyncio
async def test_refresh_rejected_once_finalized():
    repo = _FakeRepository(make_league(league_state=LeagueState.FINALIZED), entries=_scored_entries())
    result = await _orchestrator(repo).refresh_standings(LEAGUE_ID)
    assert result.error.code == LeagueErrorCode.ALREADY_FINALIZED
    assert repo.snapshot_version == 0


# ---------- Lifecycle / finalization ----------

@pytest.mark.asyncio
async def test_unlisted_event_is_a_noop():
    repo = _FakeRepository(make_league())
    result = await _orchestrator(repo).handle_lifecycle_event(
        LEAGUE_ID, LifecycleEvent.ALL_MATCHES_COMPLETE,
    )
    assert not result.changed
    assert result.current_state == LeagueState.OPEN_FOR_ENTRY


@pytest.mark.asyncio
async def test_finalize_pays_once_and_second_call_is_already_finalized():
    league = make_league(
        league_state=LeagueState.WAITING_FOR_UPDATES,
        prize_distribution=TopNDistribution(n=3),
    )
    repo = _FakeRepository(league, entries=_scored_entries())
    wallet = _FakeWallet()
    orchestrator = _orchestrator(repo, wallet=wallet)

    first = await orchestrator.finalize_league(LEAGUE_ID)
    second = await orchestrator.finalize_league(LEAGUE_ID)

    assert first.error is None
    assert first.pool_minor_units == 3000
    assert [(p.entry_id, p.amount_minor_units) for p in first.payouts] == [
        ("a", 1800), ("b", 900), ("c", 300),
    ]
    assert first.delivery.credited == 3
    assert second.error.code == LeagueErrorCode.ALREADY_FINALIZED

    assert len(repo.payouts) == 3
    assert len(wallet.credits) == 3
    assert wallet.credits[payout_idempotency_key(LEAGUE_ID, "a")]["amount_minor_units"] == 1800
    assert repo.leagues[LEAGUE_ID].league_state == LeagueState.FINALIZED
    assert repo.leagues[LEAGUE_ID].payouts_computed_at is not None


@pytest.mark.asyncio
async def test_racing_finalizers_settle_once():
    league = make_league(league_state=LeagueState.WAITING_FOR_UPDATES)
    repo = _FakeRepository(league, entries=_scored_entries())
    wallet = _FakeWallet()
    first, second = _orchestrator(repo, wallet=wallet), _orchestrator(repo, wallet=wallet)

    results = await asyncio.gather(first.finalize_league(LEAGUE_ID), second.finalize_league(LEAGUE_ID))

    codes = sorted(r.error.code.value if r.error else "OK" for r in results)
    assert codes == ["ALREADY_FINALIZED", "OK"]
    assert wallet.calls == 3


@pytest.mark.asyncio
async def test_finalize_from_wrong_state_is_invalid_transition():
    repo = _FakeRepository(make_league(league_state=LeagueState.IN_PROGRESS))
    result = await _orchestrator(repo).finalize_league(LEAGUE_ID)
    assert result.error.code == LeagueErrorCode.INVALID_TRANSITION
    assert repo.leagues[LEAGUE_ID].league_state == LeagueState.IN_PROGRESS


@pytest.mark.asyncio
async def test_credit_failure_does_not_block_other_credits():
    league = make_league(league_state=LeagueState.WAITING_FOR_UPDATES)
    repo = _FakeRepository(league, entries=_scored_entries())
    wallet = _FakeWallet(failing_users={"user-b"})
    orchestrator = _orchestrator(repo, wallet=wallet)

    result = await orchestrator.finalize_league(LEAGUE_ID)

    assert result.delivery.credited == 2
    assert result.delivery.failed == 1
    failed = repo.payouts[(LEAGUE_ID, "b")]
    assert failed.delivery_status == PayoutDeliveryStatus.FAILED
    assert failed.last_error == "wallet unavailable"
    assert repo.payouts[(LEAGUE_ID, "c")].delivery_status == PayoutDeliveryStatus.CREDITED

    wallet.failing_users.clear()
    retry = await orchestrator.retry_undelivered_credits()
    assert retry.credited == 1
    assert repo.payouts[(LEAGUE_ID, "b")].delivery_status == PayoutDeliveryStatus.CREDITED
    assert len(wallet.credits) == 3


@pytest.mark.asyncio
async def test_invalid_prize_model_raises_operator_alert():
    league = make_league(
        league_state=LeagueState.WAITING_FOR_UPDATES,
        prize_distribution=FixedPositionsDistribution(amounts={1: 5000}),
    )
    repo = _FakeRepository(league, entries=_scored_entries())
    alerts = _AlertSink()
    wallet = _FakeWallet()

    result = await _orchestrator(repo, wallet=wallet, alert=alerts).finalize_league(LEAGUE_ID)

    assert result.error.code == LeagueErrorCode.INVALID_PRIZE_MODEL
    assert len(alerts.alerts) == 1
    assert alerts.alerts[0]["kind"] == "PRIZE_MODEL_INTEGRITY"
    assert alerts.alerts[0]["target_id"] == LEAGUE_ID
    assert repo.payouts == {}
    assert wallet.calls == 0
    assert repo.leagues[LEAGUE_ID].payouts_computed_at is None


@pytest.mark.asyncio
async def test_free_league_finalizes_without_payouts():
    league = make_league(
        league_state=LeagueState.WAITING_FOR_UPDATES,
        entry_type=EntryType.FREE,
        entry_fee_minor_units=0,
    )
    repo = _FakeRepository(league, entries=_scored_entries())
    result = await _orchestrator(repo).finalize_league(LEAGUE_ID)
    assert result.error is None
    assert result.pool_minor_units == 0
    assert result.payouts == []
    assert repo.leagues[LEAGUE_ID].payouts_computed_at is not None


@pytest.mark.asyncio
async def test_sync_lifecycle_walks_to_finalized():
    repo = _FakeRepository(make_league(), entries=_scored_entries())
    results = await _orchestrator(repo).sync_lifecycle(LEAGUE_ID, LeagueState.FINALIZED)

    assert [r.current_state for r in results] == [
        LeagueState.IN_PROGRESS,
        LeagueState.WAITING_FOR_UPDATES,
        LeagueState.FINALIZED,
    ]
    assert results[-1].finalization.delivery.credited == 3


@pytest.mark.asyncio
async def test_resume_settles_finalized_league_without_payouts():
    repo = _FakeRepository(make_league(league_state=LeagueState.FINALIZED), entries=_scored_entries())
    wallet = _FakeWallet()
    orchestrator = _orchestrator(repo, wallet=wallet)

    first = await orchestrator.resume_unfinished_finalizations()
    second = await orchestrator.resume_unfinished_finalizations()

    assert len(first) == 1 and first[0].delivery.credited == 3
    assert second == []
    assert len(wallet.credits) == 3


# ---------- Settlement vs. standings refresh ----------

@pytest.mark.asyncio
async def test_refresh_in_flight_finishes_before_settlement_starts():
    league = make_league(
        league_state=LeagueState.WAITING_FOR_UPDATES,
        prize_distribution=TopNDistribution(n=3),
    )
    repo = _GatedRepository(league, entries=_scored_entries())
    orchestrator = _orchestrator(repo)

    refresh = asyncio.create_task(orchestrator.refresh_standings(
        LEAGUE_ID, [ScoreUpdate(entry_id="b", gameweek_points=99)],
    ))
    await repo.reading.wait()
    finalize = asyncio.create_task(orchestrator.finalize_league(LEAGUE_ID))
    for _ in range(5):
        await asyncio.sleep(0)
    assert not finalize.done()

    repo.release.set()
    refreshed, finalized = await refresh, await finalize

    assert refreshed.error is None
    assert finalized.error is None
    assert [(p.entry_id, p.rank, p.amount_minor_units) for p in finalized.payouts] == [
        ("b", 1, 1800), ("a", 2, 900), ("c", 3, 300),
    ]
    stored = [(e.id, e.rank, e.gameweek_points) for e in repo.entries[LEAGUE_ID]]
    assert stored == [("b", 1, 99), ("a", 2, 70), ("c", 3, 50)]


@pytest.mark.asyncio
async def test_refresh_from_another_worker_cannot_rewrite_final_standings():
    league = make_league(
        league_state=LeagueState.WAITING_FOR_UPDATES,
        prize_distribution=TopNDistribution(n=3),
    )
    repo = _GatedRepository(league, entries=_scored_entries())
    # Separate instances share no lock; only the repository guard applies.
    refresher, finalizer = _orchestrator(repo), _orchestrator(repo)

    refresh = asyncio.create_task(refresher.refresh_standings(
        LEAGUE_ID, [ScoreUpdate(entry_id="b", gameweek_points=99)],
    ))
    await repo.reading.wait()
    finalized = await finalizer.finalize_league(LEAGUE_ID)
    repo.release.set()
    refreshed = await refresh

    assert refreshed.error.code == LeagueErrorCode.ALREADY_FINALIZED
    assert [(p.entry_id, p.amount_minor_units) for p in finalized.payouts] == [
        ("a", 1800), ("b", 900), ("c", 300),
    ]
    stored = [(e.id, e.rank, e.gameweek_points) for e in repo.entries[LEAGUE_ID]]
    assert stored == [("a", 1, 70), ("b", 2, 60), ("c", 3, 50)]


@pytest.mark.asyncio
async def test_final_standings_keep_last_rank_movement():
    entries = [
        make_entry("a", gameweek_points=70, rank=1, previous_rank=3),
        make_entry("b", gameweek_points=60, rank=2, previous_rank=1),
        make_entry("c", gameweek_points=50, rank=3, previous_rank=2),
    ]
    league = make_league(league_state=LeagueState.WAITING_FOR_UPDATES)
    repo = _FakeRepository(league, entries=entries)

    result = await _orchestrator(repo).finalize_league(LEAGUE_ID)

    assert result.error is None
    stored = {e.id: e for e in repo.entries[LEAGUE_ID]}
    assert [rank_movement(stored[i]) for i in ("a", "b", "c")] == [2, -1, -1]
    assert LEAGUE_ID in repo.final_standings


@pytest.mark.asyncio
async def test_league_lock_released_once_finalized():
    repo = _FakeRepository(
        make_league(league_state=LeagueState.WAITING_FOR_UPDATES), entries=_scored_entries(),
    )
    orchestrator = _orchestrator(repo)

    await orchestrator.refresh_standings(LEAGUE_ID)
    assert LEAGUE_ID in orchestrator._locks

    await orchestrator.finalize_league(LEAGUE_ID)
    assert LEAGUE_ID not in orchestrator._locks

    rejected = await orchestrator.refresh_standings(LEAGUE_ID)
    assert rejected.error.code == LeagueErrorCode.ALREADY_FINALIZED
    assert LEAGUE_ID not in orchestrator._locks
