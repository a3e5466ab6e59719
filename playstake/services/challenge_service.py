"""
playstake.services.challenge_service — Challenge Orchestration
================================================================

Binds the pure state machine (:mod:`playstake.engine.challenge`) to the
store, the codec, the escrow ledger and the index.

Every mutating operation follows the same commit sequence:

    1. Load ``challenges/{id}`` and decrypt it.
    2. Compute the transition (pure; raises on precondition failure).
    3. Claim the record: compare-and-update it against the envelope loaded
       in step 1, writing the new sealed record with a ``commitClaim``
       marker.  A lost race raises :class:`StateConflictError` before any
       money moves.
    4. Apply the ledger ops.  If they fail, the record is put back to the
       step 1 envelope and the error propagates.
    5. Finalize: drop the marker.  Readers treat a claimed record as busy.
    6. Update the index.  A failure is logged and queued at
       ``indexRepairs/{id}`` for the sweep.
    7. Append the audit entry and send notifications (best effort).

``create`` writes a fresh id, so there is no record to claim: the escrow
debit runs first and is returned if the insert fails.  Instead, creation
claims ``activePairs/{a}:{b}:{gameRef}`` so that only one active challenge
exists per pair of users and game.  Terminal transitions release it.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from playstake.config import WagerConfig
from playstake.database.store import DocumentStore, join
from playstake.engine import challenge as machine
from playstake.engine.challenge import ACTIVE_STATUSES, Challenge, ChallengeStatus, Transition
from playstake.engine.crypto import ChallengeCodec, generate_challenge_id
from playstake.engine.errors import (
    AuthorizationError,
    ChallengeExpiredError,
    InsufficientFundsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
    WagerError,
)
from playstake.engine.validation import (
    exceeds_game_cap,
    validate_challenge_id,
    validate_create_request,
    validate_score,
    validate_user_id,
)
from playstake.services.challenge_index import ChallengeIndex
from playstake.services.ledger import EscrowLedger
from playstake.services.notifications import LoggingNotificationSink, NotificationSink, emit

logger = logging.getLogger(__name__)

CHALLENGES_ROOT = "challenges"
STUCK_ROOT = "stuckChallenges"
REPAIRS_ROOT = "indexRepairs"
FRAUD_ROOT = "fraudAlerts"
PAIRS_ROOT = "activePairs"
SESSIONS_ROOT = "gameSessions"

# Envelope key marking a record whose ledger ops are in flight
CLAIM_KEY = "commitClaim"
# A claim older than this was left behind by a crashed commit
CLAIM_TIMEOUT = timedelta(minutes=5)

DUPLICATE_MESSAGE = "You already have an active challenge with this user for this game."

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def challenge_path(challenge_id: str) -> str:
    return join(CHALLENGES_ROOT, challenge_id)


def audit_path(challenge_id: str) -> str:
    return join("auditLogs", CHALLENGES_ROOT, challenge_id)


def pair_path(user_a: str, user_b: str, game_ref: str) -> str:
    """Same path whichever user is the challenger.  User ids never contain
    ``:``, so the key is unambiguous."""
    low, high = sorted((user_a, user_b))
    return join(PAIRS_ROOT, f"{low}:{high}:{game_ref}")


def session_path(token: str) -> str:
    return join(SESSIONS_ROOT, token)


def claim_is_stale(envelope: dict, now: datetime) -> bool:
    claimed_at = datetime.fromisoformat(envelope[CLAIM_KEY]["claimedAt"])
    return now - claimed_at > CLAIM_TIMEOUT


class ChallengeService:
    """Challenge lifecycle operations for one caller at a time."""

    def __init__(
        self,
        store: DocumentStore,
        codec: ChallengeCodec,
        config: WagerConfig,
        *,
        ledger: EscrowLedger | None = None,
        index: ChallengeIndex | None = None,
        notifier: NotificationSink | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.config = config
        self.clock = clock
        self.ledger = ledger or EscrowLedger(store, clock=clock)
        self.index = index or ChallengeIndex(store)
        self.notifier = notifier or LoggingNotificationSink()

    # -----------------------------------------------------------------------
    # Record I/O
    # -----------------------------------------------------------------------
    def load(self, challenge_id: str) -> tuple[dict, Challenge]:
        """Return ``(envelope, challenge)``.

        Raises
        ------
        NotFoundError
            No record under that id.
        StateConflictError
            Another transition is committing this record.
        DecryptionError
            The envelope does not open with our secret.
        """
        envelope = self.store.get(challenge_path(challenge_id))
        if envelope is None:
            raise NotFoundError("Challenge not found.", challengeId=challenge_id)
        if CLAIM_KEY in envelope:
            raise StateConflictError(
                "Challenge is being updated. Please retry.", challengeId=challenge_id
            )
        return envelope, Challenge.from_record(self.codec.decrypt(envelope))

    def _commit(self, transition: Transition, expected: dict | None) -> Challenge:
        challenge = transition.challenge
        sealed = self.codec.encrypt(challenge.to_record())

        if expected is None:
            self._insert(transition, sealed)
        else:
            self._claim_and_apply(transition, expected, sealed)

        if challenge.status not in ACTIVE_STATUSES:
            self._release_pair(challenge)
        self._sync_index(challenge, created=expected is None)
        self._audit(transition)
        emit(self.notifier, transition.notify, transition.event, {
            "challengeId": challenge.id,
            "gameTitle": challenge.game_title,
            "betAmount": challenge.bet_amount,
            "status": challenge.status.value,
        })
        logger.info("Challenge %s: %s → %s", challenge.id, transition.event, challenge.status)
        return challenge

    def _insert(self, transition: Transition, sealed: dict) -> None:
        challenge = transition.challenge
        self.ledger.apply(transition.ops)

        def updater(current: dict | None) -> dict:
            if current is not None:
                raise StateConflictError("Challenge id already in use.", challengeId=challenge.id)
            return sealed

        try:
            self.store.transaction(challenge_path(challenge.id), updater)
        except Exception:
            # Only this challenge's own escrow is returned, so the reversal cannot overdraw.
            logger.warning("Insert of challenge %s failed; returning escrow", challenge.id)
            self.ledger.reverse(transition.ops)
            raise

    def _claim_and_apply(self, transition: Transition, expected: dict, sealed: dict) -> None:
        challenge = transition.challenge
        path = challenge_path(challenge.id)
        claimed = {
            **sealed,
            CLAIM_KEY: {"event": transition.event, "claimedAt": self.clock().isoformat()},
        }

        def claim(current: dict | None) -> dict:
            if current != expected:
                raise StateConflictError(
                    "Challenge was modified concurrently. Please retry.",
                    challengeId=challenge.id,
                )
            return claimed

        self.store.transaction(path, claim)

        try:
            self.ledger.apply(transition.ops)
        except Exception:
            logger.warning(
                "Ledger ops for challenge %s (%s) failed; restoring the record",
                challenge.id, transition.event,
            )
            self._swap(path, claimed, expected, "restore")
            raise

        self._swap(path, claimed, sealed, "finalize")

    def _swap(self, path: str, claimed: dict, replacement: dict, step: str) -> None:
        def updater(current: dict | None) -> dict:
            if current != claimed:
                raise StateConflictError("Claimed record changed underneath its commit.", path=path)
            return replacement

        try:
            self.store.transaction(path, updater)
        except Exception:
            logger.exception(
                "Could not %s %s; the record stays claimed until an operator resolves it",
                step, path,
            )
            raise

    # -----------------------------------------------------------------------
    # Active pair claims
    # -----------------------------------------------------------------------
    def _claim_pair(self, challenger_id: str, challenged_id: str, game_ref: str, challenge_id: str) -> None:
        """Raises :class:`ValidationError` if the pair already has an active
        challenge for *game_ref*."""
        path = pair_path(challenger_id, challenged_id, game_ref)
        holder = self.store.get(path)
        if holder is not None and self._holds_active(holder):
            raise ValidationError(DUPLICATE_MESSAGE)

        claimed_at = self.clock().isoformat()

        def updater(current: dict | None) -> dict:
            if current != holder:
                raise ValidationError(DUPLICATE_MESSAGE)
            return {"challengeId": challenge_id, "claimedAt": claimed_at}

        self.store.transaction(path, updater)

    def _holds_active(self, holder: dict) -> bool:
        challenge_id = holder.get("challengeId")
        if not challenge_id:
            return False
        try:
            _envelope, challenge = self.load(challenge_id)
        except NotFoundError:
            # The holder may still be inserting its record.
            claimed_at = datetime.fromisoformat(holder["claimedAt"])
            return self.clock() - claimed_at <= CLAIM_TIMEOUT
        except StateConflictError:
            return True
        return challenge.status in ACTIVE_STATUSES

    def _release_pair(self, challenge: Challenge) -> None:
        path = pair_path(challenge.challenger_id, challenge.challenged_id, challenge.game_ref)
        released_at = self.clock().isoformat()

        def updater(current: dict | None) -> dict:
            if not current or current.get("challengeId") != challenge.id:
                return current or {"challengeId": None}
            return {"challengeId": None, "releasedAt": released_at}

        try:
            if (self.store.get(path) or {}).get("challengeId") == challenge.id:
                self.store.transaction(path, updater)
        except Exception:
            # Claims check the holder's status, so a stale claim does not block.
            logger.exception("Could not release pair claim for challenge %s", challenge.id)

    def _sync_index(self, challenge: Challenge, *, created: bool) -> None:
        try:
            if created:
                self.index.upsert(challenge)
            else:
                self.index.update_status(challenge)
        except Exception:
            logger.exception("Index update failed for challenge %s; queued for repair", challenge.id)
            try:
                self.store.set(join(REPAIRS_ROOT, challenge.id), {
                    "challengeId": challenge.id,
                    "status": challenge.status.value,
                    "queuedAt": self.clock().isoformat(),
                })
            except Exception:
                logger.exception("Could not queue index repair for challenge %s", challenge.id)

    def _audit(self, transition: Transition) -> None:
        try:
            self.store.push(audit_path(transition.challenge.id), {
                "type": transition.event,
                "userId": transition.actor_id,
                "timestamp": self.clock().isoformat(),
                **transition.audit,
            })
        except Exception:
            logger.exception("Audit write failed for challenge %s", transition.challenge.id)

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------
    def create(self, caller_id: str, payload: dict[str, Any]) -> dict:
        """Open a challenge from *caller_id* against ``payload["challengedId"]``."""
        validate_user_id(caller_id)
        request = validate_create_request(payload, self.config)
        bet = request.bet_amount

        if request.challenged_id == caller_id:
            raise ValidationError("Cannot challenge yourself.")

        challenger_wallet = self.ledger.get_wallet(caller_id)
        try:
            challenged_wallet = self.ledger.get_wallet(request.challenged_id)
        except NotFoundError:
            raise NotFoundError("Challenged user not found.", challengedId=request.challenged_id) from None

        if challenger_wallet.amount < bet:
            raise InsufficientFundsError(
                "Insufficient wallet balance.", available=challenger_wallet.amount, required=bet
            )
        if challenged_wallet.amount < bet:
            raise InsufficientFundsError("Challenged user has insufficient balance.", required=bet)

        transition = machine.create(
            challenge_id=generate_challenge_id(),
            challenger_id=caller_id,
            challenged_id=request.challenged_id,
            game_ref=request.game_ref,
            game_title=request.game_title,
            game_image=request.game_image,
            bet_amount=bet,
            config=self.config,
            now=self.clock(),
        )
        challenge = transition.challenge
        self._claim_pair(caller_id, request.challenged_id, request.game_ref, challenge.id)
        try:
            self._commit(transition, None)
        except Exception:
            self._release_pair(challenge)
            raise
        return transition.result

    def accept(self, caller_id: str, challenge_id: str) -> dict:
        """Raises :class:`ChallengeExpiredError` after committing the expiry
        if the challenge ran past ``expiresAt``."""
        validate_challenge_id(challenge_id)
        envelope, challenge = self.load(challenge_id)
        transition = machine.accept(challenge, caller_id, self.config, self.clock())
        self._commit(transition, envelope)
        if transition.expired_instead:
            raise ChallengeExpiredError(
                "Challenge has expired. The challenger has been refunded.",
                **transition.result,
            )
        return transition.result

    def reject(self, caller_id: str, challenge_id: str) -> dict:
        validate_challenge_id(challenge_id)
        envelope, challenge = self.load(challenge_id)
        transition = machine.reject(challenge, caller_id, self.config, self.clock())
        self._commit(transition, envelope)
        return transition.result

    def cancel(self, caller_id: str, challenge_id: str) -> dict:
        validate_challenge_id(challenge_id)
        envelope, challenge = self.load(challenge_id)
        transition = machine.cancel(challenge, caller_id, self.config, self.clock())
        self._commit(transition, envelope)
        return transition.result

    def expire(self, challenge_id: str) -> dict:
        """Expire a pending challenge past its deadline (scheduler entry point)."""
        envelope, challenge = self.load(challenge_id)
        transition = machine.expire(challenge, self.config, self.clock())
        self._commit(transition, envelope)
        return transition.result

    def start_game_session(self, caller_id: str, challenge_id: str) -> dict:
        """Issue a one-time token the caller must present with their score
        when ``require_game_session`` is on."""
        validate_challenge_id(challenge_id)
        _envelope, challenge = self.load(challenge_id)
        role = challenge.role_of(caller_id)
        if role is None:
            raise AuthorizationError("Unauthorized: you are not a participant in this challenge.")
        if challenge.status != ChallengeStatus.ACCEPTED:
            raise StateConflictError(
                "Challenge must be accepted before playing.", status=challenge.status.value
            )
        if challenge.score_of(role) is not None:
            raise StateConflictError("You have already submitted a score for this challenge.")

        now = self.clock()
        ttl = self.config.game_session_ttl
        token = secrets.token_hex(32)
        self.store.set(session_path(token), {
            "challengeId": challenge_id,
            "userId": caller_id,
            "gameRef": challenge.game_ref,
            "startedAt": now.isoformat(),
            "expiresAt": (now + ttl).isoformat(),
            "used": False,
        })
        logger.info("Game session started for challenge %s by %s", challenge_id, caller_id)
        return {
            "sessionToken": token,
            "expiresIn": int(ttl.total_seconds()),
            "gameRef": challenge.game_ref,
            "gameTitle": challenge.game_title,
        }

    def _consume_game_session(self, caller_id: str, challenge_id: str, token: str | None) -> None:
        if token is None:
            if self.config.require_game_session:
                raise ValidationError(
                    "Session token required. Start the game through the official interface.",
                    field="sessionToken",
                )
            return
        if not isinstance(token, str) or not token.isalnum():
            raise AuthorizationError("Invalid or expired game session.")

        now = self.clock()
        path = session_path(token)

        def updater(current: dict | None) -> dict:
            if current is None or datetime.fromisoformat(current["expiresAt"]) < now:
                raise AuthorizationError("Invalid or expired game session.")
            if current["challengeId"] != challenge_id or current["userId"] != caller_id or current["used"]:
                raise AuthorizationError("Session does not match this request.")
            played = now - datetime.fromisoformat(current["startedAt"])
            if played < self.config.min_play_time:
                raise ValidationError(
                    "Game must be played for at least "
                    f"{int(self.config.min_play_time.total_seconds())} seconds."
                )
            return {**current, "used": True, "usedAt": now.isoformat()}

        self.store.transaction(path, updater)

    def submit_score(
        self,
        caller_id: str,
        challenge_id: str,
        score: Any,
        session_token: str | None = None,
    ) -> dict:
        """Record the caller's score; settles the challenge when both are in.

        A score above the game's cap raises :class:`ValidationError` and
        leaves a record under ``fraudAlerts``.  A supplied session token is
        always checked and spent; it is mandatory when
        ``require_game_session`` is on.
        """
        validate_challenge_id(challenge_id)
        validate_score(score, self.config)
        envelope, challenge = self.load(challenge_id)
        transition = machine.submit_score(challenge, caller_id, score, self.config, self.clock())

        cap = exceeds_game_cap(score, challenge.game_ref, self.config)
        if cap is not None:
            self._raise_fraud_alert(caller_id, challenge, score, cap)
            raise ValidationError("Score exceeds the maximum for this game.", max=cap)

        self._consume_game_session(caller_id, challenge_id, session_token)
        self._commit(transition, envelope)
        return transition.result

    def _raise_fraud_alert(self, caller_id: str, challenge: Challenge, score: float, cap: float) -> None:
        logger.warning(
            "FRAUD ALERT: user %s submitted %s on %s (cap %s) for challenge %s",
            caller_id, score, challenge.game_ref, cap, challenge.id,
        )
        self.store.push(FRAUD_ROOT, {
            "type": "score_above_game_cap",
            "userId": caller_id,
            "challengeId": challenge.id,
            "gameRef": challenge.game_ref,
            "score": score,
            "cap": cap,
            "timestamp": self.clock().isoformat(),
        })

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def get_challenge(self, caller_id: str, challenge_id: str) -> dict:
        """Participants-only, redacted view of one challenge."""
        validate_challenge_id(challenge_id)
        _envelope, challenge = self.load(challenge_id)
        if challenge.role_of(caller_id) is None:
            raise AuthorizationError("Unauthorized: you are not a participant in this challenge.")
        return redacted_view(challenge, caller_id)

    def history(
        self,
        caller_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
    ) -> dict:
        """Page through the caller's challenges via the index, newest first.

        Records that fail to load are logged and left out of the page.
        """
        if status is not None and status not in {s.value for s in ChallengeStatus}:
            raise ValidationError(f"Unknown status {status!r}.", field="status")

        entries = self.index.list_by_user(caller_id, status)
        page = entries[offset:offset + limit]

        challenges = []
        for entry in page:
            challenge_id = entry.get("challengeId")
            try:
                _envelope, challenge = self.load(challenge_id)
            except (WagerError, KeyError, TypeError, ValueError):
                logger.warning(
                    "Skipping challenge %s in history for %s", challenge_id, caller_id, exc_info=True
                )
                continue
            challenges.append(redacted_view(challenge, caller_id))

        return {
            "challenges": challenges,
            "total": len(entries),
            "hasMore": len(entries) > offset + limit,
        }

    # -----------------------------------------------------------------------
    # Stuck challenges
    # -----------------------------------------------------------------------
    def flag_stuck(self, challenge: Challenge) -> bool:
        """Record *challenge* under ``stuckChallenges``.  Returns ``False`` if
        it was already flagged."""
        flagged_now = self.clock().isoformat()
        newly_flagged = False

        def updater(current: dict | None) -> dict:
            nonlocal newly_flagged
            if current is not None:
                newly_flagged = False
                return current
            newly_flagged = True
            return {
                "challengeId": challenge.id,
                "challengerId": challenge.challenger_id,
                "challengedId": challenge.challenged_id,
                "betAmount": challenge.bet_amount,
                "acceptedAt": challenge.accepted_at.isoformat() if challenge.accepted_at else None,
                "flaggedAt": flagged_now,
            }

        self.store.transaction(join(STUCK_ROOT, challenge.id), updater)
        if newly_flagged:
            logger.warning(
                "Challenge %s stuck in accepted since %s (escrow %d per side)",
                challenge.id, challenge.accepted_at, challenge.bet_amount,
            )
        return newly_flagged

    def flag_interrupted(self, challenge_id: str, envelope: dict) -> bool:
        """Record a commit that claimed *challenge_id* and never finished.

        Whether its ledger ops landed is unknown, so an operator decides.
        Returns ``False`` if it was already flagged.
        """
        claim = envelope[CLAIM_KEY]
        flagged_now = self.clock().isoformat()
        newly_flagged = False

        def updater(current: dict | None) -> dict:
            nonlocal newly_flagged
            newly_flagged = current is None
            if current is not None:
                return current
            return {
                "challengeId": challenge_id,
                "reason": "interrupted_commit",
                "event": claim.get("event"),
                "claimedAt": claim.get("claimedAt"),
                "flaggedAt": flagged_now,
            }

        self.store.transaction(join(STUCK_ROOT, challenge_id), updater)
        if newly_flagged:
            logger.error(
                "ESCROW MISMATCH risk: commit %s on challenge %s claimed at %s never finished",
                claim.get("event"), challenge_id, claim.get("claimedAt"),
            )
        return newly_flagged

    def list_stuck(self) -> list[dict]:
        return list(self.store.children(STUCK_ROOT).values())


def redacted_view(challenge: Challenge, viewer_id: str) -> dict:
    """What a participant may see.

    The opponent's score stays hidden until the challenge is settled.
    """
    role = challenge.role_of(viewer_id)
    own_score = challenge.score_of(role) if role else None
    opponent_role = machine.Role.CHALLENGED if role == machine.Role.CHALLENGER else machine.Role.CHALLENGER
    settled = challenge.status == ChallengeStatus.COMPLETED

    return {
        "challengeId": challenge.id,
        "challengerId": challenge.challenger_id,
        "challengedId": challenge.challenged_id,
        "role": role.value if role else None,
        "opponentId": challenge.opponent_of(viewer_id),
        "gameRef": challenge.game_ref,
        "gameTitle": challenge.game_title,
        "gameImage": challenge.game_image,
        "betAmount": challenge.bet_amount,
        "status": challenge.status.value,
        "createdAt": challenge.created_at.isoformat(),
        "expiresAt": challenge.expires_at.isoformat(),
        "completedAt": challenge.completed_at.isoformat() if challenge.completed_at else None,
        "totalPrize": challenge.total_prize,
        "netPrize": challenge.net_prize,
        "serviceCharge": challenge.service_charge,
        "yourScore": own_score,
        "opponentScore": challenge.score_of(opponent_role) if settled else None,
        "opponentSubmitted": challenge.score_of(opponent_role) is not None,
        "winnerId": challenge.winner_id,
        "refundAmount": challenge.refund_amount,
        "feeCharged": challenge.fee_charged,
    }
