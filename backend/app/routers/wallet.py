"""Wallet endpoints: balance and prize transaction history."""

from fastapi import APIRouter, Depends, Query

from app.models.wallet import TransactionResponse, WalletResponse
from app.services import wallet_service
from app.services.auth_service import get_current_user

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("", response_model=WalletResponse)
async def get_wallet(user=Depends(get_current_user)):
    """Get the current user's wallet (lazy-creates if needed)."""
    wallet = await wallet_service.get_or_create_wallet(str(user["_id"]))
    return WalletResponse(
        id=str(wallet["_id"]),
        balance_minor_units=wallet["balance_minor_units"],
        total_won_minor_units=wallet.get("total_won_minor_units", 0),
    )


@router.get("/transactions", response_model=list[TransactionResponse])
async def get_transactions(
    limit: int = Query(50, le=200),
    skip: int = Query(0, ge=0),
    user=Depends(get_current_user),
):
    """Get wallet transaction history."""
    txs = await wallet_service.get_wallet_transactions(str(user["_id"]), limit=limit, skip=skip)
    return [
        TransactionResponse(
            id=str(tx["_id"]),
            type=tx["type"],
            amount_minor_units=tx["amount_minor_units"],
            balance_after_minor_units=tx.get("balance_after_minor_units"),
            description=tx["description"],
            created_at=tx["created_at"],
        )
        for tx in txs
    ]
