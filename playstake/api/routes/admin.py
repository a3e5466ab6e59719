"""
playstake.api.routes.admin — Operator endpoints (admin JWT)
=============================================================
Challenge maintenance, plus the only path that adds money to a wallet:
an operator (or the payment gateway's service account) crediting a
confirmed deposit.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from playstake.api.deps import get_challenge_service, get_current_admin, get_ledger
from playstake.api.routes.wallet import AmountBody, wallet_view
from playstake.engine.validation import validate_user_id
from playstake.services.challenge_service import ChallengeService
from playstake.services.expiration_service import run_expiration_sweep
from playstake.services.ledger import EscrowLedger

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/challenges",
    tags=["admin"],
    dependencies=[Depends(get_current_admin)],
)

wallets_router = APIRouter(prefix="/admin/wallets", tags=["admin"])

Service = Annotated[ChallengeService, Depends(get_challenge_service)]
Ledger = Annotated[EscrowLedger, Depends(get_ledger)]


@router.get("/stuck")
def stuck_challenges(service: Service):
    stuck = service.list_stuck()
    return {"challenges": stuck, "total": len(stuck)}


@router.post("/sweep")
def sweep(service: Service):
    """Run one expiration sweep now and return its summary."""
    return run_expiration_sweep(service)


@router.get("/index/status")
def index_status(service: Service):
    return service.index.migration_status()


@router.post("/index/rebuild")
def index_rebuild(service: Service):
    return service.index.rebuild_from_scratch(service.codec)


@wallets_router.post("/{user_id}/credit")
def credit_wallet(
    user_id: str,
    body: AmountBody,
    ledger: Ledger,
    admin: dict = Depends(get_current_admin),
):
    """Credit a confirmed deposit, opening the wallet if needed."""
    validate_user_id(user_id, "userId")
    ledger.open_wallet(user_id)
    ledger.credit(user_id, body.amount, "deposit")
    logger.info("Admin %s credited %d to %s", admin.get("sub"), body.amount, user_id)
    return wallet_view(ledger.get_wallet(user_id))
