"""
playstake.engine.challenge — Challenge State Machine
======================================================

Pure transition functions.  No store I/O, no crypto, no clock reads: each
function takes the current :class:`Challenge`, the caller, the config and
``now``, checks preconditions, and returns a :class:`Transition` holding

    * the next record,
    * the ledger operations that must be applied for it to be true,
    * the response payload, audit fields, and who to notify.

:mod:`playstake.services.challenge_service` applies the operations, seals
and persists the record.

State graph::

    pending ──accept──▶ accepted ──submit_score×2──▶ completed
       │
       ├──reject──▶ rejected
       ├──cancel──▶ cancelled
       └──expire──▶ expired

Fee math rounds half-up to whole minor units.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from playstake.engine.errors import AuthorizationError, StateConflictError, ValidationError
from playstake.engine.wallet import LedgerOp, LedgerOpKind

if TYPE_CHECKING:
    from playstake.config import WagerConfig

__all__ = [
    "ACTIVE_STATUSES",
    "Challenge",
    "ChallengeStatus",
    "Role",
    "Transition",
    "accept",
    "cancel",
    "compute_fee",
    "compute_prize",
    "create",
    "expire",
    "is_stuck",
    "reject",
    "submit_score",
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ChallengeStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Role(enum.StrEnum):
    CHALLENGER = "challenger"
    CHALLENGED = "challenged"


ACTIVE_STATUSES = frozenset({ChallengeStatus.PENDING, ChallengeStatus.ACCEPTED})

# Status graph.  Anything not listed is terminal.
ALLOWED_TRANSITIONS: dict[ChallengeStatus, frozenset[ChallengeStatus]] = {
    ChallengeStatus.PENDING: frozenset({
        ChallengeStatus.ACCEPTED,
        ChallengeStatus.REJECTED,
        ChallengeStatus.CANCELLED,
        ChallengeStatus.EXPIRED,
    }),
    ChallengeStatus.ACCEPTED: frozenset({ChallengeStatus.COMPLETED}),
}

# Role → score attribute / submission timestamp attribute
SCORE_FIELD: dict[Role, str] = {
    Role.CHALLENGER: "challenger_score",
    Role.CHALLENGED: "challenged_score",
}
SUBMITTED_AT_FIELD: dict[Role, str] = {
    Role.CHALLENGER: "challenger_submitted_at",
    Role.CHALLENGED: "challenged_submitted_at",
}


# ---------------------------------------------------------------------------
# Fee math
# ---------------------------------------------------------------------------
def compute_fee(amount: int, rate: float) -> int:
    """``round(amount * rate)`` with halves rounded up, as whole units."""
    raw = Decimal(amount) * Decimal(str(rate))
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True, slots=True)
class PrizeBreakdown:
    service_charge: int
    total_prize: int
    net_prize: int


def compute_prize(bet_amount: int, service_charge_rate: float) -> PrizeBreakdown:
    """Prize fields fixed at creation.

    ``service_charge`` is computed on the single bet, not the pooled prize:
    a 100 bet at 20% gives 20 / 200 / 180.
    """
    service_charge = compute_fee(bet_amount, service_charge_rate)
    total_prize = 2 * bet_amount
    return PrizeBreakdown(
        service_charge=service_charge,
        total_prize=total_prize,
        net_prize=total_prize - service_charge,
    )


# ---------------------------------------------------------------------------
# Challenge record
# ---------------------------------------------------------------------------
_DATETIME_FIELDS = frozenset({
    "created_at", "expires_at", "accepted_at", "completed_at", "rejected_at",
    "cancelled_at", "expired_at", "challenger_submitted_at", "challenged_submitted_at",
})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(slots=True)
class Challenge:
    """Decrypted challenge record.

    Serialised with camelCase keys (``challengerId``, ``betAmount`` …) by
    :meth:`to_record` before encryption.
    """

    id: str
    challenger_id: str
    challenged_id: str
    game_ref: str
    game_title: str
    bet_amount: int
    status: ChallengeStatus
    created_at: datetime
    expires_at: datetime
    service_charge: int
    total_prize: int
    net_prize: int
    game_image: str | None = None
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    rejected_by: str | None = None
    challenger_score: float | None = None
    challenged_score: float | None = None
    challenger_submitted_at: datetime | None = None
    challenged_submitted_at: datetime | None = None
    winner_id: str | None = None
    refund_amount: int | None = None
    fee_charged: int | None = None

    # -- participants -------------------------------------------------------
    def role_of(self, user_id: str) -> Role | None:
        if user_id == self.challenger_id:
            return Role.CHALLENGER
        if user_id == self.challenged_id:
            return Role.CHALLENGED
        return None

    def participant(self, role: Role) -> str:
        return self.challenger_id if role == Role.CHALLENGER else self.challenged_id

    def opponent_of(self, user_id: str) -> str:
        return self.challenged_id if user_id == self.challenger_id else self.challenger_id

    def score_of(self, role: Role) -> float | None:
        return getattr(self, SCORE_FIELD[role])

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    # -- (de)serialisation --------------------------------------------------
    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, enum.Enum):
                value = value.value
            record[_camel(f.name)] = value
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Challenge:
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in record:
                continue
            value = record[key]
            if f.name in _DATETIME_FIELDS and value is not None:
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        kwargs["status"] = ChallengeStatus(kwargs["status"])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Transition result
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Transition:
    """Output of a state-machine step."""

    challenge: Challenge
    event: str
    actor_id: str | None
    ops: list[LedgerOp] = field(default_factory=list)
    result: dict[str, Any] = field(default_factory=dict)
    audit: dict[str, Any] = field(default_factory=dict)
    notify: tuple[str, ...] = ()
    # accept() ran into an expired challenge and expired it instead
    expired_instead: bool = False


def _advance(challenge: Challenge, new_status: ChallengeStatus, **changes: Any) -> Challenge:
    allowed = ALLOWED_TRANSITIONS.get(challenge.status, frozenset())
    if new_status not in allowed:
        raise StateConflictError(
            f"Challenge is {challenge.status}; cannot move to {new_status}.",
            status=challenge.status.value,
        )
    return replace(challenge, status=new_status, **changes)


def _require_status(challenge: Challenge, expected: ChallengeStatus) -> None:
    if challenge.status != expected:
        raise StateConflictError(
            f"Challenge is no longer {expected} (current status: {challenge.status}).",
            status=challenge.status.value,
        )


def _require_role(challenge: Challenge, caller_id: str, role: Role, action: str) -> None:
    if challenge.role_of(caller_id) != role:
        raise AuthorizationError(f"Unauthorized: you cannot {action} this challenge.")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def create(
    *,
    challenge_id: str,
    challenger_id: str,
    challenged_id: str,
    game_ref: str,
    game_title: str,
    bet_amount: int,
    config: WagerConfig,
    now: datetime,
    game_image: str | None = None,
) -> Transition:
    """New pending challenge; locks the challenger's stake in escrow."""
    if challenger_id == challenged_id:
        raise ValidationError("Cannot challenge yourself.")
    if bet_amount < config.min_bet_amount or bet_amount > config.max_bet_amount:
        raise ValidationError(
            f"Bet amount must be between {config.min_bet_amount} and {config.max_bet_amount}.",
            min=config.min_bet_amount,
            max=config.max_bet_amount,
        )

    prize = compute_prize(bet_amount, config.service_charge_rate)
    challenge = Challenge(
        id=challenge_id,
        challenger_id=challenger_id,
        challenged_id=challenged_id,
        game_ref=game_ref,
        game_title=game_title,
        game_image=game_image,
        bet_amount=bet_amount,
        status=ChallengeStatus.PENDING,
        created_at=now,
        expires_at=now + config.challenge_ttl,
        service_charge=prize.service_charge,
        total_prize=prize.total_prize,
        net_prize=prize.net_prize,
    )
    return Transition(
        challenge=challenge,
        event="challenge_created",
        actor_id=challenger_id,
        ops=[LedgerOp(challenger_id, LedgerOpKind.ESCROW_DEBIT, bet_amount, "challenge_bet", challenge_id)],
        result={"challengeId": challenge_id, "betAmount": bet_amount, "gameTitle": game_title},
        audit={"amount": bet_amount},
        notify=(challenged_id,),
    )


def accept(challenge: Challenge, caller_id: str, config: WagerConfig, now: datetime) -> Transition:
    """Challenged user matches the stake.

    A pending challenge past ``expires_at`` is expired here instead; the
    returned transition then has ``expired_instead=True``.
    """
    _require_role(challenge, caller_id, Role.CHALLENGED, "accept")
    _require_status(challenge, ChallengeStatus.PENDING)

    if challenge.is_expired(now):
        return replace(expire(challenge, config, now), expired_instead=True)

    bet = challenge.bet_amount
    return Transition(
        challenge=_advance(challenge, ChallengeStatus.ACCEPTED, accepted_at=now),
        event="challenge_accepted",
        actor_id=caller_id,
        ops=[LedgerOp(caller_id, LedgerOpKind.ESCROW_DEBIT, bet, "challenge_accept", challenge.id)],
        result={"challengeId": challenge.id, "betAmount": bet},
        audit={"amount": bet},
        notify=(challenge.challenger_id,),
    )


def _refund_ops(challenge: Challenge, refund: int, tx_type: str) -> list[LedgerOp]:
    ops = [
        LedgerOp(challenge.challenger_id, LedgerOpKind.ESCROW_RELEASE,
                 challenge.bet_amount, "escrow_release", challenge.id),
    ]
    if refund > 0:
        ops.append(LedgerOp(challenge.challenger_id, LedgerOpKind.CREDIT, refund, tx_type, challenge.id))
    return ops


def reject(challenge: Challenge, caller_id: str, config: WagerConfig, now: datetime) -> Transition:
    """Challenged user declines; challenger is refunded minus the reject fee."""
    _require_role(challenge, caller_id, Role.CHALLENGED, "reject")
    _require_status(challenge, ChallengeStatus.PENDING)

    bet = challenge.bet_amount
    fee = compute_fee(bet, config.reject_fee_rate)
    refund = bet - fee
    return Transition(
        challenge=_advance(
            challenge, ChallengeStatus.REJECTED,
            rejected_at=now, rejected_by=caller_id, refund_amount=refund, fee_charged=fee,
        ),
        event="challenge_rejected",
        actor_id=caller_id,
        ops=_refund_ops(challenge, refund, "challenge_rejected_refund"),
        result={"refundAmount": refund, "rejectionFee": fee, "originalAmount": bet},
        audit={"amount": bet, "refundAmount": refund, "fee": fee},
        notify=(challenge.challenger_id,),
    )


def cancel(challenge: Challenge, caller_id: str, config: WagerConfig, now: datetime) -> Transition:
    """Challenger withdraws a pending challenge; refunded minus the cancel fee.

    Only the challenger's escrow is touched: nothing was locked for the
    challenged user while pending.
    """
    _require_role(challenge, caller_id, Role.CHALLENGER, "cancel")
    _require_status(challenge, ChallengeStatus.PENDING)

    bet = challenge.bet_amount
    fee = compute_fee(bet, config.cancel_fee_rate)
    refund = bet - fee
    return Transition(
        challenge=_advance(
            challenge, ChallengeStatus.CANCELLED,
            cancelled_at=now, refund_amount=refund, fee_charged=fee,
        ),
        event="challenge_cancelled",
        actor_id=caller_id,
        ops=_refund_ops(challenge, refund, "challenge_cancelled_refund"),
        result={"refundAmount": refund, "serviceCharge": fee},
        audit={"amount": bet, "refundAmount": refund, "fee": fee},
        notify=(challenge.challenged_id,),
    )


def expire(challenge: Challenge, config: WagerConfig, now: datetime) -> Transition:
    """Time out a pending challenge; challenger refunded minus the expire fee."""
    _require_status(challenge, ChallengeStatus.PENDING)
    if not challenge.is_expired(now):
        raise StateConflictError(
            "Challenge has not expired yet.", expiresAt=challenge.expires_at.isoformat()
        )

    bet = challenge.bet_amount
    fee = compute_fee(bet, config.expire_fee_rate)
    refund = bet - fee
    return Transition(
        challenge=_advance(
            challenge, ChallengeStatus.EXPIRED,
            expired_at=now, refund_amount=refund, fee_charged=fee,
        ),
        event="challenge_expired",
        actor_id=None,
        ops=_refund_ops(challenge, refund, "challenge_expired_refund"),
        result={"refundAmount": refund, "expirationFee": fee},
        audit={"amount": bet, "refundAmount": refund, "fee": fee},
        notify=(challenge.challenger_id,),
    )


def submit_score(
    challenge: Challenge,
    caller_id: str,
    score: float,
    config: WagerConfig,
    now: datetime,
) -> Transition:
    """Record the caller's score; settles the challenge once both are in."""
    role = challenge.role_of(caller_id)
    if role is None:
        raise AuthorizationError("Unauthorized: you are not a participant in this challenge.")
    if challenge.status != ChallengeStatus.ACCEPTED:
        raise StateConflictError(
            "Challenge must be accepted before submitting a score.",
            status=challenge.status.value,
        )
    if challenge.score_of(role) is not None:
        raise StateConflictError("You have already submitted a score for this challenge.")
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score) or score < 0:
        raise ValidationError("Score must be a finite, non-negative number.")

    updated = replace(challenge, **{SCORE_FIELD[role]: score, SUBMITTED_AT_FIELD[role]: now})
    both_in = updated.challenger_score is not None and updated.challenged_score is not None

    transition = Transition(
        challenge=updated,
        event="score_submitted",
        actor_id=caller_id,
        result={"challengeId": challenge.id, "score": score, "bothScoresSubmitted": both_in},
        audit={"score": score},
        notify=(challenge.opponent_of(caller_id),),
    )
    if both_in:
        completion = _complete(updated, config, now)
        transition.event = completion.event
        transition.challenge = completion.challenge
        transition.ops = completion.ops
        transition.audit.update(completion.audit)
        transition.notify = completion.notify
    return transition


def _complete(challenge: Challenge, config: WagerConfig, now: datetime) -> Transition:
    """Settle an accepted challenge with both scores in."""
    bet = challenge.bet_amount
    if challenge.challenger_score > challenge.challenged_score:
        winner_id: str | None = challenge.challenger_id
    elif challenge.challenged_score > challenge.challenger_score:
        winner_id = challenge.challenged_id
    else:
        winner_id = None

    ops = [
        LedgerOp(challenge.challenger_id, LedgerOpKind.ESCROW_RELEASE, bet, "escrow_release", challenge.id),
        LedgerOp(challenge.challenged_id, LedgerOpKind.ESCROW_RELEASE, bet, "escrow_release", challenge.id),
    ]
    if winner_id is not None:
        ops.append(LedgerOp(winner_id, LedgerOpKind.CREDIT, challenge.net_prize, "challenge_win", challenge.id))
        audit = {"winnerId": winner_id, "amount": challenge.net_prize}
    else:
        # Each side pays the service charge on its own stake.
        refund = bet - compute_fee(bet, config.service_charge_rate)
        if refund > 0:
            for user_id in (challenge.challenger_id, challenge.challenged_id):
                ops.append(LedgerOp(user_id, LedgerOpKind.CREDIT, refund, "challenge_tie_refund", challenge.id))
        audit = {"winnerId": None, "refundAmount": refund}

    return Transition(
        challenge=_advance(challenge, ChallengeStatus.COMPLETED, completed_at=now, winner_id=winner_id),
        event="challenge_completed",
        actor_id=None,
        ops=ops,
        audit=audit,
        notify=(challenge.challenger_id, challenge.challenged_id),
    )


def is_stuck(challenge: Challenge, config: WagerConfig, now: datetime) -> bool:
    """Accepted for longer than the stuck threshold without completing."""
    if challenge.status != ChallengeStatus.ACCEPTED:
        return False
    started = challenge.accepted_at or challenge.created_at
    return now - started > config.stuck_threshold
