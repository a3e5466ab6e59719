"""
playstake.api.rate_limit — Per-Operation Rate Limiting
========================================================

Sliding-window limits per caller and operation (``create``, ``accept``,
``reject``, ``cancel``, ``score``, ``general``), configured in
``config.yaml`` under ``rate_limits``.

Events are stored in ``rate_limit_events`` so that limits hold across
restarts and across API workers.  Exceeding a limit raises
:class:`~playstake.engine.errors.RateLimitError`, rendered as HTTP 429 with
a ``Retry-After`` header.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from fastapi import Depends
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from playstake.api.deps import get_current_user
from playstake.config import DEFAULT_RATE_LIMITS
from playstake.database.models import RateLimitEvent
from playstake.engine.errors import RateLimitError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimiter(Protocol):
    """What the API needs from a limiter."""

    def check(self, operation: str, user_id: str) -> tuple[bool, dict[str, Any]]: ...

    def record(self, operation: str, user_id: str) -> dict[str, Any]: ...


class DbRateLimiter:
    """Sliding-window limiter keyed by ``{operation}:{user_id}``.

    Operations without their own entry in *limits* fall under ``general``.
    """

    def __init__(
        self,
        limits: dict[str, tuple[int, int]] | None = None,
        *,
        engine: Engine,
        clock: Clock = _utcnow,
    ) -> None:
        self.limits = dict(limits or DEFAULT_RATE_LIMITS)
        self.engine = engine
        self.clock = clock

    def limit_for(self, operation: str) -> tuple[int, int]:
        return self.limits.get(operation) or self.limits["general"]

    @staticmethod
    def _key(operation: str, user_id: str) -> str:
        return f"{operation}:{user_id}"

    @staticmethod
    def _normalize_dt(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def check(self, operation: str, user_id: str) -> tuple[bool, dict[str, Any]]:
        """Check whether *user_id* may perform *operation* now.

        Returns (allowed, info) where info contains:
          - remaining: requests remaining in the window
          - reset: seconds until the oldest request leaves the window
          - limit: the max requests per window
        """
        max_requests, window = self.limit_for(operation)
        key = self._key(operation, user_id)
        now = self.clock()
        cutoff = now - timedelta(seconds=window)

        with Session(self.engine) as session:
            session.execute(
                delete(RateLimitEvent).where(
                    RateLimitEvent.key == key,
                    RateLimitEvent.timestamp < cutoff,
                )
            )
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.key == key)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= max_requests:
            oldest = self._normalize_dt(timestamps[0])
            reset = (oldest + timedelta(seconds=window) - now).total_seconds()
            return False, {"remaining": 0, "reset": max(1, int(reset) + 1), "limit": max_requests}

        return True, {"remaining": max_requests - count, "reset": window, "limit": max_requests}

    def record(self, operation: str, user_id: str) -> dict[str, Any]:
        """Record one request and return the updated info."""
        max_requests, window = self.limit_for(operation)
        key = self._key(operation, user_id)
        now = self.clock()

        with Session(self.engine) as session:
            session.add(RateLimitEvent(key=key, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent).where(
                    RateLimitEvent.key == key,
                    RateLimitEvent.timestamp >= now - timedelta(seconds=window),
                )
            ) or 0
            session.commit()

        return {"remaining": max(0, max_requests - count), "reset": window, "limit": max_requests}

    def hit(self, operation: str, user_id: str) -> dict[str, Any]:
        """Check and record in one call.

        Raises
        ------
        RateLimitError
            The caller is over the limit; nothing is recorded.
        """
        allowed, info = self.check(operation, user_id)
        if not allowed:
            max_requests, window = self.limit_for(operation)
            logger.warning(
                "Rate limit exceeded for %s on %s: %d requests per %d s",
                user_id, operation, max_requests, window,
            )
            raise RateLimitError(
                f"Too many {operation} requests. Please try again later.",
                retry_after=info["reset"],
            )
        return self.record(operation, user_id)

    def reset(self, user_id: str | None = None) -> None:
        """Clear rate limit state. If user_id is None, clear all."""
        with Session(self.engine) as session:
            if user_id is None:
                session.execute(delete(RateLimitEvent))
            else:
                session.execute(delete(RateLimitEvent).where(RateLimitEvent.key.endswith(f":{user_id}")))
            session.commit()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_limiter: DbRateLimiter | None = None


def get_rate_limiter() -> DbRateLimiter:
    """Return the global rate limiter instance."""
    if _limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiter() first")
    return _limiter


def configure_rate_limiter(*, engine: Engine, limits: dict[str, tuple[int, int]] | None = None) -> None:
    """Configure the global limiter to use durable DB-backed storage."""
    global _limiter
    _limiter = DbRateLimiter(limits, engine=engine)


# ---------------------------------------------------------------------------
# FastAPI dependency, chained after get_current_user
# ---------------------------------------------------------------------------
def rate_limited(operation: str):
    """Dependency factory: authenticate the caller and count one
    *operation* against their limit.

    Use ``Depends(rate_limited("accept"))`` in place of
    ``Depends(get_current_user)``; the dependency returns the user id.
    """

    async def dependency(
        user_id: str = Depends(get_current_user),
        limiter: DbRateLimiter = Depends(get_rate_limiter),
    ) -> str:
        await asyncio.to_thread(limiter.hit, operation, user_id)
        return user_id

    dependency.__name__ = f"rate_limited_{operation}"
    return dependency
