"""
playstake.api.routes.challenges — Challenge endpoints (JWT‑protected)
=======================================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from playstake.api.deps import get_challenge_service
from playstake.api.rate_limit import rate_limited
from playstake.services.challenge_service import ChallengeService

router = APIRouter(prefix="/challenges", tags=["challenges"])

Service = Annotated[ChallengeService, Depends(get_challenge_service)]


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ChallengeCreate(BaseModel):
    challengedId: str
    gameRef: str
    gameTitle: str
    betAmount: int
    gameImage: str | None = None


class ScoreSubmit(BaseModel):
    challengeId: str
    score: float
    sessionToken: str | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("", status_code=status.HTTP_201_CREATED)
def create_challenge(
    body: ChallengeCreate,
    service: Service,
    user_id: str = Depends(rate_limited("create")),
):
    return service.create(user_id, body.model_dump())


@router.post("/score")
def submit_score(
    body: ScoreSubmit,
    service: Service,
    user_id: str = Depends(rate_limited("score")),
):
    result = service.submit_score(user_id, body.challengeId, body.score, body.sessionToken)
    return {"score": result["score"], "bothScoresSubmitted": result["bothScoresSubmitted"]}


@router.get("/history")
def challenge_history(
    service: Service,
    user_id: str = Depends(rate_limited("general")),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: str | None = Query(None),
):
    return service.history(user_id, limit=limit, offset=offset, status=status)


@router.get("/{challenge_id}")
def get_challenge(
    challenge_id: str,
    service: Service,
    user_id: str = Depends(rate_limited("general")),
):
    return service.get_challenge(user_id, challenge_id)


@router.post("/{challenge_id}/accept")
def accept_challenge(
    challenge_id: str,
    service: Service,
    user_id: str = Depends(rate_limited("accept")),
):
    return service.accept(user_id, challenge_id)


@router.post("/{challenge_id}/reject")
def reject_challenge(
    challenge_id: str,
    service: Service,
    user_id: str = Depends(rate_limited("reject")),
):
    return service.reject(user_id, challenge_id)


@router.delete("/{challenge_id}")
def cancel_challenge(
    challenge_id: str,
    service: Service,
    user_id: str = Depends(rate_limited("cancel")),
):
    return service.cancel(user_id, challenge_id)


@router.post("/{challenge_id}/session")
def start_game_session(
    challenge_id: str,
    service: Service,
    user_id: str = Depends(rate_limited("score")),
):
    """One-time token to present with the score for this challenge."""
    return service.start_game_session(user_id, challenge_id)
