"""
playstake.engine.wallet — Wallet Snapshot & Ledger Operations
===============================================================

Pure value types for the escrow ledger.  No store I/O here: a
:class:`LedgerOp` is applied to a :class:`Wallet` in memory, inside the
store's compare-and-update, by :mod:`playstake.services.ledger`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from playstake.engine.errors import InsufficientFundsError, ValidationError

__all__ = ["LedgerEntry", "LedgerOp", "LedgerOpKind", "Wallet", "apply_op"]


class LedgerOpKind(enum.StrEnum):
    """Primitive balance movements."""
    ESCROW_DEBIT = "escrow_debit"      # available → escrow
    ESCROW_RELEASE = "escrow_release"  # escrow → (paid out by a separate credit)
    CREDIT = "credit"                  # → available
    DEBIT = "debit"                    # available →
    # Compensations, only produced by LedgerOp.inverse()
    ESCROW_RETURN = "escrow_return"    # escrow → available
    ESCROW_RESTORE = "escrow_restore"  # → escrow


_INVERSE = {
    LedgerOpKind.ESCROW_DEBIT: LedgerOpKind.ESCROW_RETURN,
    LedgerOpKind.ESCROW_RETURN: LedgerOpKind.ESCROW_DEBIT,
    LedgerOpKind.ESCROW_RELEASE: LedgerOpKind.ESCROW_RESTORE,
    LedgerOpKind.ESCROW_RESTORE: LedgerOpKind.ESCROW_RELEASE,
    LedgerOpKind.CREDIT: LedgerOpKind.DEBIT,
    LedgerOpKind.DEBIT: LedgerOpKind.CREDIT,
}


@dataclass(frozen=True, slots=True)
class LedgerOp:
    """One balance movement on one user's wallet.

    ``tx_type`` is the label written to the transaction log
    (``challenge_bet``, ``challenge_win`` …).
    """

    user_id: str
    kind: LedgerOpKind
    amount: int
    tx_type: str
    challenge_id: str | None = None

    def inverse(self) -> LedgerOp:
        return replace(self, kind=_INVERSE[self.kind], tx_type="reversal")


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Immutable transaction-log row."""

    type: str
    op: str
    amount: int
    related_challenge_id: str | None
    balance_before: int
    balance_after: int
    escrow_before: int
    escrow_after: int
    timestamp: datetime

    def to_doc(self) -> dict:
        return {
            "type": self.type,
            "op": self.op,
            "amount": self.amount,
            "relatedChallengeId": self.related_challenge_id,
            "balanceBefore": self.balance_before,
            "balanceAfter": self.balance_after,
            "escrowBefore": self.escrow_before,
            "escrowAfter": self.escrow_after,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class Wallet:
    """Balance snapshot stored at ``users/{uid}/wallet``."""

    amount: int = 0
    escrow_balance: int = 0
    last_transaction: dict | None = None
    created_at: str | None = None
    updated_at: str | None = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc: dict) -> Wallet:
        known = {"amount", "escrowBalance", "lastTransaction", "createdAt", "updatedAt"}
        return cls(
            amount=int(doc.get("amount") or 0),
            escrow_balance=int(doc.get("escrowBalance") or 0),
            last_transaction=doc.get("lastTransaction"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
            extra={k: v for k, v in doc.items() if k not in known},
        )

    def to_doc(self) -> dict:
        return {
            **self.extra,
            "amount": self.amount,
            "escrowBalance": self.escrow_balance,
            "lastTransaction": self.last_transaction,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def apply_op(wallet: Wallet, op: LedgerOp, now: datetime | None = None) -> LedgerEntry:
    """Mutate *wallet* in place according to *op* and return the log entry.

    Raises
    ------
    ValidationError
        If the amount is not a positive integer.
    InsufficientFundsError
        If the move would drive ``amount`` or ``escrow_balance`` negative.
    """
    if not isinstance(op.amount, int) or isinstance(op.amount, bool) or op.amount <= 0:
        raise ValidationError(f"Ledger amount must be a positive integer, got {op.amount!r}")

    now = now or datetime.now(UTC)
    balance_before, escrow_before = wallet.amount, wallet.escrow_balance

    if op.kind == LedgerOpKind.ESCROW_DEBIT:
        _require_available(wallet, op.amount)
        wallet.amount -= op.amount
        wallet.escrow_balance += op.amount
    elif op.kind == LedgerOpKind.ESCROW_RELEASE:
        _require_escrow(wallet, op.amount)
        wallet.escrow_balance -= op.amount
    elif op.kind == LedgerOpKind.CREDIT:
        wallet.amount += op.amount
    elif op.kind == LedgerOpKind.DEBIT:
        _require_available(wallet, op.amount)
        wallet.amount -= op.amount
    elif op.kind == LedgerOpKind.ESCROW_RETURN:
        _require_escrow(wallet, op.amount)
        wallet.escrow_balance -= op.amount
        wallet.amount += op.amount
    elif op.kind == LedgerOpKind.ESCROW_RESTORE:
        wallet.escrow_balance += op.amount

    entry = LedgerEntry(
        type=op.tx_type,
        op=op.kind.value,
        amount=op.amount,
        related_challenge_id=op.challenge_id,
        balance_before=balance_before,
        balance_after=wallet.amount,
        escrow_before=escrow_before,
        escrow_after=wallet.escrow_balance,
        timestamp=now,
    )
    wallet.last_transaction = {
        "type": op.tx_type,
        "amount": op.amount,
        "relatedChallengeId": op.challenge_id,
        "timestamp": now.isoformat(),
    }
    wallet.updated_at = now.isoformat()
    return entry


def _require_available(wallet: Wallet, amount: int) -> None:
    if wallet.amount < amount:
        raise InsufficientFundsError(
            f"Insufficient wallet balance: {wallet.amount} available, {amount} required.",
            available=wallet.amount,
            required=amount,
            escrow=wallet.escrow_balance,
        )


def _require_escrow(wallet: Wallet, amount: int) -> None:
    if wallet.escrow_balance < amount:
        raise InsufficientFundsError(
            f"Escrow balance {wallet.escrow_balance} is less than {amount}.",
            escrow=wallet.escrow_balance,
            required=amount,
        )
