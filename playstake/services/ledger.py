"""
playstake.services.ledger — Escrow Ledger
===========================================

Applies :class:`~playstake.engine.wallet.LedgerOp` lists to wallets held in
the document store.

Every wallet mutation is a single ``store.transaction`` on
``users/{uid}/wallet``: the balance is re-read inside the atomic step, so
two concurrent debits can never both pass the balance check.  All ops for
one user in a batch go through the **same** transaction, so a batch such as
*release escrow, then credit refund* lands atomically per wallet.

Across wallets nothing is atomic.  :meth:`EscrowLedger.apply` undoes the
wallets it already changed if a later wallet fails, and
:meth:`EscrowLedger.reverse` is used by the challenge service when the
insert of a new challenge fails after its escrow debit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from playstake.database.store import DocumentStore, join
from playstake.engine.errors import NotFoundError, WagerError
from playstake.engine.wallet import LedgerEntry, LedgerOp, LedgerOpKind, Wallet, apply_op

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def wallet_path(user_id: str) -> str:
    return join("users", user_id, "wallet")


def transactions_path(user_id: str) -> str:
    return join("users", user_id, "transactions")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EscrowLedger:
    """Wallet mutations over a :class:`DocumentStore`."""

    def __init__(self, store: DocumentStore, *, clock: Clock = _utcnow) -> None:
        self.store = store
        self.clock = clock

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def get_wallet(self, user_id: str) -> Wallet:
        doc = self.store.get(wallet_path(user_id))
        if doc is None:
            raise NotFoundError("Wallet not found.", userId=user_id)
        return Wallet.from_doc(doc)

    def list_transactions(self, user_id: str, limit: int = 20, offset: int = 0) -> list[dict]:
        """Newest-first page of the user's transaction log."""
        entries = self.store.children(transactions_path(user_id))
        ordered = [
            {"id": key, **value}
            for key, value in sorted(entries.items(), reverse=True)
        ]
        return ordered[offset:offset + limit]

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------
    def open_wallet(self, user_id: str) -> Wallet:
        """Create an empty wallet if the user has none; return the current one."""
        now = self.clock().isoformat()

        def updater(current: dict | None) -> dict:
            if current is not None:
                return current
            logger.info("Opening wallet for user %s", user_id)
            return Wallet(created_at=now, updated_at=now).to_doc()

        return Wallet.from_doc(self.store.transaction(wallet_path(user_id), updater))

    def escrow_debit(self, user_id: str, amount: int, tx_type: str = "escrow_debit",
                     challenge_id: str | None = None) -> list[LedgerEntry]:
        return self.apply([LedgerOp(user_id, LedgerOpKind.ESCROW_DEBIT, amount, tx_type, challenge_id)])

    def escrow_release(self, user_id: str, amount: int, tx_type: str = "escrow_release",
                       challenge_id: str | None = None) -> list[LedgerEntry]:
        return self.apply([LedgerOp(user_id, LedgerOpKind.ESCROW_RELEASE, amount, tx_type, challenge_id)])

    def credit(self, user_id: str, amount: int, tx_type: str = "credit",
               challenge_id: str | None = None) -> list[LedgerEntry]:
        return self.apply([LedgerOp(user_id, LedgerOpKind.CREDIT, amount, tx_type, challenge_id)])

    def debit(self, user_id: str, amount: int, tx_type: str = "debit",
              challenge_id: str | None = None) -> list[LedgerEntry]:
        return self.apply([LedgerOp(user_id, LedgerOpKind.DEBIT, amount, tx_type, challenge_id)])

    def apply(self, ops: list[LedgerOp]) -> list[LedgerEntry]:
        """Apply *ops*, one atomic wallet transaction per user.

        Users are processed in order of first appearance; within a user the
        ops keep their order.  If any wallet rejects its ops, wallets already
        changed in this call are reversed and the error propagates, so the
        net effect of a failed ``apply`` is nothing.

        Raises
        ------
        InsufficientFundsError
            A balance check failed.
        NotFoundError
            A referenced wallet does not exist.
        """
        groups: dict[str, list[LedgerOp]] = {}
        for op in ops:
            groups.setdefault(op.user_id, []).append(op)

        applied: list[LedgerOp] = []
        entries: list[LedgerEntry] = []
        for user_id, user_ops in groups.items():
            try:
                entries.extend(self._apply_to_wallet(user_id, user_ops))
            except WagerError:
                if applied:
                    logger.warning(
                        "Ledger batch failed on %s; reversing %d applied op(s)",
                        user_id, len(applied),
                    )
                    self.reverse(applied)
                raise
            applied.extend(user_ops)
        return entries

    def reverse(self, ops: list[LedgerOp]) -> None:
        """Apply the inverse of *ops* in reverse order.

        Each inverse is applied on its own.  A failure is logged and the
        remaining inverses still run; the wallet will need manual repair.
        """
        for op in reversed(ops):
            inverse = op.inverse()
            try:
                self._apply_to_wallet(inverse.user_id, [inverse])
            except WagerError:
                logger.exception(
                    "ESCROW MISMATCH: could not reverse %s of %d for user %s (challenge %s)",
                    op.kind, op.amount, op.user_id, op.challenge_id,
                )

    def _apply_to_wallet(self, user_id: str, ops: list[LedgerOp]) -> list[LedgerEntry]:
        now = self.clock()
        entries: list[LedgerEntry] = []

        def updater(current: dict | None) -> dict:
            if current is None:
                raise NotFoundError("Wallet not found.", userId=user_id)
            # Re-run on conflict; start from a clean slate each time.
            entries.clear()
            wallet = Wallet.from_doc(current)
            for op in ops:
                entries.append(apply_op(wallet, op, now))
            return wallet.to_doc()

        self.store.transaction(wallet_path(user_id), updater)

        log_path = transactions_path(user_id)
        for entry in entries:
            self.store.push(log_path, entry.to_doc())
        return list(entries)
