"""
backend/app/models/league_errors.py

Purpose:
    Typed rule-violation results for league admission, configuration and
    settlement. Every rejected operation carries a machine-readable code and
    the details the calling layer needs to render a specific message.

Dependencies:
    - enum.Enum
    - pydantic.BaseModel
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class LeagueErrorCode(str, Enum):
    LEAGUE_NOT_FOUND = "LEAGUE_NOT_FOUND"
    LEAGUE_NOT_OPEN = "LEAGUE_NOT_OPEN"
    LEAGUE_FULL = "LEAGUE_FULL"
    GAMEWEEK_CLOSED = "GAMEWEEK_CLOSED"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    TEAM_LIMIT_EXCEEDED = "TEAM_LIMIT_EXCEEDED"
    TEAM_NOT_OWNED = "TEAM_NOT_OWNED"
    INVALID_LEAGUE_CONFIG = "INVALID_LEAGUE_CONFIG"
    INVALID_PRIZE_MODEL = "INVALID_PRIZE_MODEL"
    INVALID_KNOCKOUT_ROUNDS = "INVALID_KNOCKOUT_ROUNDS"
    ALREADY_FINALIZED = "ALREADY_FINALIZED"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class LeagueRuleViolation(BaseModel):
    code: LeagueErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class LeagueRuleError(ValueError):
    """Raised by the pure calculators; converted to a violation at the service edge."""

    def __init__(self, violation: LeagueRuleViolation):
        super().__init__(violation.message)
        self.violation = violation

    @property
    def code(self) -> LeagueErrorCode:
        return self.violation.code


def violation(code: LeagueErrorCode, message: str, **details: Any) -> LeagueRuleViolation:
    return LeagueRuleViolation(code=code, message=message, details=details)


def rule_error(code: LeagueErrorCode, message: str, **details: Any) -> LeagueRuleError:
    return LeagueRuleError(violation(code, message, **details))
