"""
playstake.engine.errors — Error taxonomy
==========================================

Every failure a caller can see carries a stable ``kind`` string, an HTTP
status code and a human-readable message.  The API layer renders these
uniformly; nothing here knows about FastAPI.
"""

from __future__ import annotations

from typing import Any


class WagerError(Exception):
    """Base class for all user-visible challenge/wallet failures."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.details}


class ValidationError(WagerError):
    """Malformed or out-of-range input."""

    kind = "validation_error"
    status_code = 400


class AuthorizationError(WagerError):
    """Caller is not allowed to perform this action on this record."""

    kind = "forbidden"
    status_code = 403


class NotFoundError(WagerError):
    kind = "not_found"
    status_code = 404


class InsufficientFundsError(WagerError):
    """A ledger precondition failed (available or escrow balance too low)."""

    kind = "insufficient_funds"
    status_code = 400


class StateConflictError(WagerError):
    """The record's status no longer matches what the transition expects,
    or a concurrent writer won the compare-and-update race."""

    kind = "state_conflict"
    status_code = 409


class ChallengeExpiredError(WagerError):
    """Raised by accept when the challenge had already expired.

    The expiry (and refund) has been committed by the time this is raised.
    """

    kind = "challenge_expired"
    status_code = 400


class DecryptionError(WagerError):
    """Envelope was tampered with, truncated, or sealed with another secret."""

    kind = "decryption_failed"
    status_code = 500

    def to_dict(self) -> dict[str, Any]:
        # Never leak cipher internals to callers.
        return {"error": self.kind, "message": "Challenge record could not be read."}


class RateLimitError(WagerError):
    kind = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after
