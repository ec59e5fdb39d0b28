"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap for the backend import path and small factories
    for league/entry models used across league tests.
"""

from __future__ import annotations

import sys
from pathlib import Path

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from app.models.league import Entry, League  # noqa: E402


def make_league(**overrides) -> League:
    data = {
        "id": "507f1f77bcf86cd799439011",
        "name": "GW10 Champions",
        "entry_type": "PAID",
        "entry_fee_minor_units": 1000,
        "max_teams": 10,
        "current_team_count": 0,
        "start_gameweek": 10,
        "end_gameweek": 10,
    }
    data.update(overrides)
    return League.model_validate(data)


def make_entry(entry_id: str, **overrides) -> Entry:
    data = {
        "id": entry_id,
        "league_id": "507f1f77bcf86cd799439011",
        "linked_team_id": f"team-{entry_id}",
        "user_id": f"user-{entry_id}",
    }
    data.update(overrides)
    return Entry.model_validate(data)
