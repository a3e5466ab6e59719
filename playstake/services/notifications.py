"""
playstake.services.notifications — Lifecycle Notifications
=============================================================

Fire-and-forget delivery of challenge lifecycle events.  A failed
notification never fails the transition that produced it: :func:`emit`
logs and moves on.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from playstake.database.store import DocumentStore, join

logger = logging.getLogger(__name__)

# Event type → message shown to the recipient
MESSAGES: dict[str, str] = {
    "challenge_created": "You have a new challenge request.",
    "challenge_accepted": "Your challenge was accepted.",
    "challenge_rejected": "Your challenge was rejected. Your stake was refunded minus the rejection fee.",
    "challenge_cancelled": "A challenge sent to you was cancelled.",
    "challenge_expired": "Your challenge expired. Your stake was refunded minus the expiration fee.",
    "score_submitted": "Your opponent submitted a score.",
    "challenge_completed": "A challenge you played has been settled.",
}


class NotificationSink(Protocol):
    def send(self, user_id: str, event: str, payload: dict[str, Any]) -> None: ...


class StoreNotificationSink:
    """Writes notifications to ``notifications/{uid}`` in the document store."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def send(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self.store.push(join("notifications", user_id), {
            "type": event,
            "message": MESSAGES.get(event, event),
            "read": False,
            "createdAt": datetime.now(UTC).isoformat(),
            **payload,
        })


class LoggingNotificationSink:
    """Logs instead of delivering; for tests and local runs."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((user_id, event, payload))
        logger.info("notify %s: %s %s", user_id, event, payload)


def emit(sink: NotificationSink, recipients: tuple[str, ...], event: str, payload: dict[str, Any]) -> None:
    for user_id in recipients:
        try:
            sink.send(user_id, event, payload)
        except Exception:
            logger.exception("Failed to deliver %s notification to %s", event, user_id)
