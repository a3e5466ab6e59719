"""
playstake.services.expiration_service — Expiration Sweep & Scheduler
======================================================================

Periodic job that walks every challenge record.

How it works:
    1. Decrypt each record under ``challenges/``.  Records that fail to
       decrypt are logged and counted as errors; the sweep continues.
    2. ``pending`` past ``expiresAt`` → expire (challenger refunded minus
       the expiration fee).
    3. ``accepted`` for longer than the stuck threshold → flagged under
       ``stuckChallenges/{id}``.  Stuck challenges are never resolved
       automatically; escrow stays locked until an operator acts.
    4. Index entries whose status disagrees with the record, or that are
       queued under ``indexRepairs/``, are rewritten from the record.
    5. A record still carrying a commit claim after ``CLAIM_TIMEOUT`` was
       left by a crashed commit; it is flagged under ``stuckChallenges``.
       Fresh claims are skipped.

The sweep is synchronous (store I/O); :class:`ExpirationScheduler` runs it
from the event loop through :func:`~playstake.database.engine.run_db`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from playstake.database.engine import run_db
from playstake.database.store import join
from playstake.engine.challenge import ChallengeStatus, Role, is_stuck
from playstake.engine.errors import StateConflictError, WagerError
from playstake.services.challenge_service import (
    CHALLENGES_ROOT,
    CLAIM_KEY,
    REPAIRS_ROOT,
    challenge_path,
    claim_is_stale,
)

if TYPE_CHECKING:
    from playstake.engine.challenge import Challenge
    from playstake.services.challenge_service import ChallengeService

logger = logging.getLogger(__name__)


def run_expiration_sweep(service: ChallengeService) -> dict:
    """One pass over all challenges.

    Returns ``{"checked", "expired", "flagged", "reindexed", "errors"}``.
    """
    summary = {"checked": 0, "expired": 0, "flagged": 0, "reindexed": 0, "errors": 0}
    repairs = {
        key: value for key, value in service.store.children(REPAIRS_ROOT).items()
        if not value.get("resolvedAt")
    }

    for challenge_id in service.store.children(CHALLENGES_ROOT):
        summary["checked"] += 1
        try:
            _sweep_one(service, challenge_id, challenge_id in repairs, summary)
        except (WagerError, SQLAlchemyError, KeyError, TypeError, ValueError):
            summary["errors"] += 1
            logger.exception("Sweep failed on challenge %s", challenge_id)

    if summary["expired"] or summary["flagged"] or summary["reindexed"] or summary["errors"]:
        logger.info(
            "Expiration sweep: %d checked, %d expired, %d flagged, %d reindexed, %d errors",
            summary["checked"], summary["expired"], summary["flagged"],
            summary["reindexed"], summary["errors"],
        )
    return summary


def _sweep_one(service: ChallengeService, challenge_id: str, repair_queued: bool, summary: dict) -> None:
    now = service.clock()
    envelope = service.store.get(challenge_path(challenge_id))
    if envelope is not None and CLAIM_KEY in envelope:
        if claim_is_stale(envelope, now) and service.flag_interrupted(challenge_id, envelope):
            summary["flagged"] += 1
        return

    _envelope, challenge = service.load(challenge_id)

    if challenge.status == ChallengeStatus.PENDING and challenge.is_expired(now):
        try:
            service.expire(challenge_id)
        except StateConflictError:
            # A participant acted between our read and the expiry.
            logger.info("Challenge %s changed during sweep; skipping expiry", challenge_id)
            return
        summary["expired"] += 1
        return

    if is_stuck(challenge, service.config, now):
        if service.flag_stuck(challenge):
            summary["flagged"] += 1

    if repair_queued or _index_drifted(service, challenge):
        service.index.update_status(challenge)
        if repair_queued:
            service.store.update(join(REPAIRS_ROOT, challenge_id), {"resolvedAt": now.isoformat()})
        summary["reindexed"] += 1
        logger.info("Reindexed challenge %s (status %s)", challenge_id, challenge.status)


def _index_drifted(service: ChallengeService, challenge: Challenge) -> bool:
    for role in (Role.CHALLENGER, Role.CHALLENGED):
        entry = service.index.get_entry(challenge.participant(role), challenge.id)
        if entry is None or entry.get("status") != challenge.status.value:
            return True
    return False


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
class ExpirationScheduler:
    """Runs :func:`run_expiration_sweep` every ``interval_seconds`` on the
    event loop.  The first run happens at start.

    A failed sweep is logged; the loop keeps going.
    """

    def __init__(self, service: ChallengeService, interval_seconds: float) -> None:
        self.service = service
        self.interval_seconds = interval_seconds
        self.last_summary: dict | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict:
        self.last_summary = await run_db(run_expiration_sweep, self.service)
        return self.last_summary

    def start(self) -> None:
        if self._task is not None:
            return

        async def _loop() -> None:
            while True:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("Expiration sweep error")
                await asyncio.sleep(self.interval_seconds)

        self._task = asyncio.get_running_loop().create_task(_loop(), name="expiration-sweep")
        logger.info("Expiration scheduler started (every %.0f s)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiration scheduler stopped")
