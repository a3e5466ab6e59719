"""
playstake.services.challenge_index — Per-User Challenge Index
===============================================================

Challenge records are encrypted, so listing "my challenges" by decrypting
every record does not scale.  Each participant instead gets a plaintext
index entry at ``userChallenges/{uid}/{challengeId}``::

    {"challengeId", "role", "status", "opponentId", "gameRef",
     "createdAt", "updatedAt"}

The entry's ``status`` follows the record's status eventually: an index
write that fails after the record write is queued at ``indexRepairs/{id}``
and reconciled by the expiration sweep.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from playstake.database.store import DocumentStore, join
from playstake.engine.challenge import Challenge, Role
from playstake.engine.errors import WagerError

if TYPE_CHECKING:
    from playstake.engine.crypto import ChallengeCodec

logger = logging.getLogger(__name__)

INDEX_ROOT = "userChallenges"
CHALLENGES_ROOT = "challenges"


def entry_path(user_id: str, challenge_id: str) -> str:
    return join(INDEX_ROOT, user_id, challenge_id)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def build_entry(challenge: Challenge, role: Role, updated_at: str | None = None) -> dict:
    user_id = challenge.participant(role)
    return {
        "challengeId": challenge.id,
        "role": role.value,
        "status": challenge.status.value,
        "opponentId": challenge.opponent_of(user_id),
        "gameRef": challenge.game_ref,
        "createdAt": challenge.created_at.isoformat(),
        "updatedAt": updated_at or _utcnow_iso(),
    }


class ChallengeIndex:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------
    def upsert(self, challenge: Challenge) -> None:
        """Write both participants' entries from the record."""
        now = _utcnow_iso()
        for role in (Role.CHALLENGER, Role.CHALLENGED):
            user_id = challenge.participant(role)
            self.store.set(entry_path(user_id, challenge.id), build_entry(challenge, role, now))

    def update_status(self, challenge: Challenge) -> None:
        """Bring both entries' ``status`` in line with *challenge*.

        A missing entry is recreated from the record.
        """
        now = _utcnow_iso()
        for role in (Role.CHALLENGER, Role.CHALLENGED):
            user_id = challenge.participant(role)

            def updater(current: dict | None, role: Role = role) -> dict:
                if current is None:
                    return build_entry(challenge, role, now)
                return {**current, "status": challenge.status.value, "updatedAt": now}

            self.store.transaction(entry_path(user_id, challenge.id), updater)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def get_entry(self, user_id: str, challenge_id: str) -> dict | None:
        return self.store.get(entry_path(user_id, challenge_id))

    def list_by_user(self, user_id: str, status: str | None = None) -> list[dict]:
        """The user's entries, newest first, optionally filtered by status."""
        rows = self.store.query(join(INDEX_ROOT, user_id), order_by="createdAt", descending=True)
        entries = [entry for _key, entry in rows]
        if status is not None:
            entries = [e for e in entries if e.get("status") == status]
        return entries

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------
    def rebuild_from_scratch(self, codec: ChallengeCodec) -> dict:
        """Decrypt every challenge record and rewrite both index entries.

        Records that fail to decrypt are counted and skipped.

        Returns ``{"migrated": N, "errors": M}``.
        """
        migrated = errors = 0
        for challenge_id, envelope in self.store.children(CHALLENGES_ROOT).items():
            try:
                challenge = Challenge.from_record(codec.decrypt(envelope))
                self.upsert(challenge)
            except (WagerError, KeyError, TypeError, ValueError):
                errors += 1
                logger.warning("Index rebuild skipped challenge %s", challenge_id, exc_info=True)
                continue
            migrated += 1

        logger.info("Index rebuild finished: %d migrated, %d errors", migrated, errors)
        self.store.set(join("indexMeta", "lastRebuild"), {
            "migrated": migrated,
            "errors": errors,
            "finishedAt": _utcnow_iso(),
        })
        return {"migrated": migrated, "errors": errors}

    def migration_status(self) -> dict:
        """Whether the index covers every stored challenge."""
        challenge_ids = set(self.store.children(CHALLENGES_ROOT))
        entries = self.store.scan(INDEX_ROOT)

        users: set[str] = set()
        indexed: set[str] = set()
        for path, entry in entries.items():
            _root, user_id, _cid = path.split("/", 2)
            users.add(user_id)
            indexed.add(entry.get("challengeId"))

        missing = challenge_ids - indexed
        status = {
            "needsMigration": bool(missing),
            "userCount": len(users),
            "challengeCount": len(challenge_ids),
            "indexedChallengeCount": len(challenge_ids & indexed),
            "lastRebuild": self.store.get(join("indexMeta", "lastRebuild")),
        }
        if missing:
            status["reason"] = f"{len(missing)} challenge(s) have no index entries"
        return status
