"""Wallet models: balances and the prize credit ledger, in minor units."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TransactionType(str, Enum):
    LEAGUE_PRIZE = "LEAGUE_PRIZE"


class WalletResponse(BaseModel):
    """Wallet data returned to the client."""
    id: str
    balance_minor_units: int
    total_won_minor_units: int = 0


class TransactionResponse(BaseModel):
    """Transaction data returned to the client."""
    id: str
    type: str
    amount_minor_units: int
    balance_after_minor_units: Optional[int] = None
    description: str
    created_at: datetime
