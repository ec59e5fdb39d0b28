"""
backend/app/services/prize_engine.py

Purpose:
    Converts final standings into payout records under the supported prize
    distribution models (TOP_N tables, caller percentage tables, fixed
    position amounts, winner-takes-all). All money is integer minor units.

Rounding:
    Percentage shares are floored per entry. The residual (pool minus the sum
    of floored shares, including shares of positions nobody occupies) is
    added to the first rank-1 entry, so percentage-derived payouts always sum
    exactly to the pool.

Ties:
    Entries sharing a rank inside the paid range are paid identically at that
    rank's share. When duplicated shares overrun the pool, the overrun is taken
    from the lowest paid rank groups first.

Dependencies:
    - decimal
    - app.models.league
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable

from app.config import settings
from app.models.league import (
    Entry,
    EntryType,
    FixedPositionsDistribution,
    PayoutRecord,
    PercentageDistribution,
    TopNDistribution,
    WinnerTakesAllDistribution,
)
from app.models.league_errors import LeagueErrorCode, rule_error

_HUNDRED = Decimal("100")

# (first_rank, last_rank, percent per rank)
_TOP_10_TIERS = [
    (1, 1, 30), (2, 2, 20), (3, 3, 15), (4, 4, 10),
    (5, 5, 8), (6, 6, 6), (7, 7, 5), (8, 10, 2),
]


def _expand_tiers(tiers: list[tuple[int, int, int]]) -> dict[int, Decimal]:
    table: dict[int, Decimal] = {}
    for first, last, percent in tiers:
        for rank in range(first, last + 1):
            table[rank] = Decimal(percent)
    return table


TOP_N_TABLES: dict[int, dict[int, Decimal]] = {
    3: {1: Decimal(60), 2: Decimal(30), 3: Decimal(10)},
    5: {1: Decimal(50), 2: Decimal(25), 3: Decimal(15), 4: Decimal(7), 5: Decimal(3)},
    10: _expand_tiers(_TOP_10_TIERS),
}


@dataclass(frozen=True)
class PrizePool:
    gross_minor_units: int
    platform_fee_minor_units: int
    distributable_minor_units: int


def compute_prize_pool(
    entry_type: EntryType,
    entry_fee_minor_units: int,
    team_count: int,
    platform_fee_percent: float = 0.0,
) -> PrizePool:
    """Entry fees collected minus the platform's percentage cut (floored)."""
    if entry_type == EntryType.FREE:
        return PrizePool(0, 0, 0)
    gross = entry_fee_minor_units * team_count
    fee = _floor(Decimal(gross) * Decimal(str(platform_fee_percent)) / _HUNDRED)
    return PrizePool(gross, fee, gross - fee)


def prize_templates() -> list[dict]:
    """Selectable distribution templates shown at league creation."""
    return [
        {
            "id": "WINNER_TAKES_ALL",
            "name": "Winner Takes All",
            "description": "100% of prize pool to 1st place",
            "distribution": {"kind": "WINNER_TAKES_ALL"},
        },
        {
            "id": "TOP_3",
            "name": "Top 3",
            "description": "60% / 30% / 10% to 1st, 2nd, 3rd",
            "distribution": {"kind": "TOP_N", "n": 3},
        },
        {
            "id": "TOP_5",
            "name": "Top 5",
            "description": "50% / 25% / 15% / 7% / 3%",
            "distribution": {"kind": "TOP_N", "n": 5},
        },
        {
            "id": "TOP_10",
            "name": "Top 10",
            "description": "30% / 20% / 15% / 10% / 8% / 6% / 5% / 2% for 8th-10th",
            "distribution": {"kind": "TOP_N", "n": 10},
        },
        {
            "id": "FIXED_POSITIONS",
            "name": "Fixed Position Prizes",
            "description": "Set fixed amounts for each position",
            "distribution": None,
        },
    ]


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def _check_ranks(ranks: Iterable[int], kind: str) -> None:
    bad = sorted(r for r in ranks if r < 1)
    if bad:
        raise rule_error(
            LeagueErrorCode.INVALID_PRIZE_MODEL,
            "Prize positions must be 1 or greater.",
            kind=kind,
            invalid_ranks=bad,
        )


def percentage_table(model) -> dict[int, Decimal] | None:
    """Rank -> percent for percentage-derived models; None for fixed amounts."""
    if isinstance(model, TopNDistribution):
        table = TOP_N_TABLES.get(model.n)
        if table is None:
            raise rule_error(
                LeagueErrorCode.INVALID_PRIZE_MODEL,
                f"Unsupported TOP_N size {model.n}.",
                kind=model.kind,
                n=model.n,
                supported=sorted(TOP_N_TABLES),
            )
        return dict(table)
    if isinstance(model, PercentageDistribution):
        return {int(rank): Decimal(str(pct)) for rank, pct in model.table.items()}
    if isinstance(model, WinnerTakesAllDistribution):
        return {1: _HUNDRED}
    if isinstance(model, FixedPositionsDistribution):
        return None
    raise TypeError(f"Unknown prize distribution: {model!r}")


def validate_distribution(model, pool_minor_units: int) -> None:
    """Reject malformed models before any payout is produced."""
    if isinstance(model, FixedPositionsDistribution):
        _check_ranks(model.amounts, model.kind)
        negative = sorted(r for r, amount in model.amounts.items() if amount < 0)
        if negative:
            raise rule_error(
                LeagueErrorCode.INVALID_PRIZE_MODEL,
                "Fixed prize amounts cannot be negative.",
                kind=model.kind,
                invalid_ranks=negative,
            )
        total = sum(model.amounts.values())
        if total > pool_minor_units:
            raise rule_error(
                LeagueErrorCode.INVALID_PRIZE_MODEL,
                "Fixed prize amounts exceed the prize pool.",
                kind=model.kind,
                total_minor_units=total,
                pool_minor_units=pool_minor_units,
            )
        return

    table = percentage_table(model)
    if isinstance(model, PercentageDistribution):
        _check_ranks(table, model.kind)
        if any(pct < 0 for pct in table.values()):
            raise rule_error(
                LeagueErrorCode.INVALID_PRIZE_MODEL,
                "Percentages cannot be negative.",
                kind=model.kind,
            )
        total = sum(table.values(), Decimal(0))
        tolerance = Decimal(str(settings.PERCENTAGE_SUM_TOLERANCE))
        if abs(total - _HUNDRED) > tolerance:
            raise rule_error(
                LeagueErrorCode.INVALID_PRIZE_MODEL,
                "Percentages must sum to 100.",
                kind=model.kind,
                total_percent=float(total),
            )


def _group_by_rank(entries: Iterable[Entry]) -> dict[int, list[Entry]]:
    groups: dict[int, list[Entry]] = {}
    for entry in entries:
        if entry.rank is None:
            raise ValueError(f"Entry {entry.id} has no rank; rank entries before computing payouts.")
        groups.setdefault(entry.rank, []).append(entry)
    return dict(sorted(groups.items()))


def _trim_overrun(amounts: dict[int, int], groups: dict[int, list[Entry]], pool: int) -> None:
    """Shrink the lowest paid groups until the total fits in the pool."""
    overrun = sum(amounts[rank] * len(groups[rank]) for rank in groups) - pool
    for rank in reversed(list(groups)):
        if overrun <= 0:
            break
        size = len(groups[rank])
        group_total = amounts[rank] * size
        if group_total == 0:
            continue
        per_entry = max(group_total - overrun, 0) // size
        overrun -= group_total - per_entry * size
        amounts[rank] = per_entry


def compute_payouts(
    pool_minor_units: int,
    ranked_entries: Iterable[Entry],
    model,
    include_unpaid: bool = False,
) -> list[PayoutRecord]:
    """Payouts owed to each ranked entry, in standings order.

    Raises LeagueRuleError(INVALID_PRIZE_MODEL) for a rejected model.
    """
    validate_distribution(model, pool_minor_units)
    groups = _group_by_rank(ranked_entries)
    table = percentage_table(model)

    if table is None:
        covered = {int(rank): amount for rank, amount in model.amounts.items()}
    else:
        covered = {
            rank: _floor(Decimal(pool_minor_units) * pct / _HUNDRED)
            for rank, pct in table.items()
        }

    amounts = {rank: covered.get(rank, 0) for rank in groups}
    _trim_overrun(amounts, groups, pool_minor_units)

    records = [
        PayoutRecord(
            entry_id=entry.id,
            league_id=entry.league_id,
            user_id=entry.user_id,
            rank=rank,
            amount_minor_units=amounts[rank],
        )
        for rank, members in groups.items()
        for entry in members
    ]

    if table is not None and records:
        remainder = pool_minor_units - sum(r.amount_minor_units for r in records)
        if remainder > 0:
            # Tied leaders share the residual evenly; units that cannot be
            # split go to the leaders in standings order, one each.
            leaders = [r for r in records if r.rank == records[0].rank]
            share, leftover = divmod(remainder, len(leaders))
            for position, record in enumerate(leaders):
                record.amount_minor_units += share + (1 if position < leftover else 0)

    return [
        r for r in records
        if include_unpaid or r.rank in covered or r.amount_minor_units > 0
    ]
