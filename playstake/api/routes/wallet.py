"""
playstake.api.routes.wallet — Wallet balance, withdrawal and history
======================================================================

Users cannot fund their own wallets; credits come through the operator
endpoint in :mod:`playstake.api.routes.admin`.  Withdrawal only moves the
available balance; escrow is touched exclusively by challenge transitions.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from playstake.api.deps import get_ledger
from playstake.api.rate_limit import rate_limited
from playstake.engine.wallet import Wallet
from playstake.services.ledger import EscrowLedger

router = APIRouter(prefix="/wallet", tags=["wallet"])

Ledger = Annotated[EscrowLedger, Depends(get_ledger)]


class AmountBody(BaseModel):
    amount: int


def wallet_view(wallet: Wallet) -> dict:
    return {
        "balance": wallet.amount,
        "escrowBalance": wallet.escrow_balance,
        "lastTransaction": wallet.last_transaction,
        "updatedAt": wallet.updated_at,
    }


@router.get("")
def get_wallet(ledger: Ledger, user_id: str = Depends(rate_limited("general"))):
    return wallet_view(ledger.open_wallet(user_id))


@router.post("/withdraw")
def withdraw(body: AmountBody, ledger: Ledger, user_id: str = Depends(rate_limited("general"))):
    ledger.debit(user_id, body.amount, "withdrawal")
    return wallet_view(ledger.get_wallet(user_id))


@router.get("/transactions")
def transactions(
    ledger: Ledger,
    user_id: str = Depends(rate_limited("general")),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    return {"transactions": ledger.list_transactions(user_id, limit=limit, offset=offset)}
