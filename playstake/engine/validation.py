"""
playstake.engine.validation — Structural Request Checks
=========================================================

Pure checks run before any state is loaded.  Every failure is a
:class:`~playstake.engine.errors.ValidationError` naming the offending field.

Behavioural checks (self-challenge, one active challenge per pair and game,
rate limits) need state and live in the service and
:mod:`playstake.api.rate_limit`.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from playstake.engine.errors import ValidationError

if TYPE_CHECKING:
    from playstake.config import WagerConfig

USER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
CHALLENGE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
GAME_REF_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")

MAX_TITLE_LENGTH = 100
MAX_IMAGE_LENGTH = 2048


@dataclass(frozen=True, slots=True)
class CreateRequest:
    """A create-challenge payload after validation and normalisation."""

    challenged_id: str
    game_ref: str
    game_title: str
    bet_amount: int
    game_image: str | None = None


def validate_user_id(value: Any, field: str = "userId") -> str:
    if not isinstance(value, str) or not USER_ID_RE.match(value):
        raise ValidationError(f"Invalid {field} format.", field=field)
    return value


def validate_challenge_id(value: Any) -> str:
    if not isinstance(value, str) or not CHALLENGE_ID_RE.match(value):
        raise ValidationError("Invalid challenge ID format.", field="challengeId")
    return value


def validate_game_ref(value: Any) -> str:
    if not isinstance(value, str) or not GAME_REF_RE.match(value):
        raise ValidationError("Invalid gameRef format.", field="gameRef")
    return value


def validate_title(value: Any) -> str:
    """Trimmed title of 1 to 100 characters."""
    if not isinstance(value, str):
        raise ValidationError("gameTitle is required.", field="gameTitle")
    title = value.strip()
    if not title or len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"gameTitle must be 1-{MAX_TITLE_LENGTH} characters.", field="gameTitle"
        )
    return title


def validate_bet_amount(value: Any, config: WagerConfig) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("betAmount must be a whole number.", field="betAmount")
    if value < config.min_bet_amount:
        raise ValidationError(
            f"Minimum bet amount is {config.min_bet_amount}.",
            field="betAmount", min=config.min_bet_amount,
        )
    if value > config.max_bet_amount:
        raise ValidationError(
            f"Maximum bet amount is {config.max_bet_amount}.",
            field="betAmount", max=config.max_bet_amount,
        )
    return value


def validate_score(value: Any, config: WagerConfig) -> float:
    """Finite, non-negative and within the global ceiling.

    Per-game caps are checked by :func:`exceeds_game_cap`; exceeding one is
    a fraud signal, not just a bad request.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError("Score must be a finite number.", field="score")
    if value < 0:
        raise ValidationError("Score cannot be negative.", field="score")
    if value > config.max_score:
        raise ValidationError(
            f"Score cannot exceed {config.max_score}.", field="score", max=config.max_score
        )
    return value


def exceeds_game_cap(score: float, game_ref: str, config: WagerConfig) -> float | None:
    """Return the game's cap if *score* is above it, else ``None``."""
    cap = config.game_max_scores.get(game_ref)
    if cap is not None and score > cap:
        return cap
    return None


def validate_create_request(payload: dict, config: WagerConfig) -> CreateRequest:
    """Check every field of a create-challenge payload.

    *payload* uses the wire names (``challengedId``, ``gameRef`` …).
    """
    for name in ("challengedId", "gameRef", "gameTitle", "betAmount"):
        if payload.get(name) is None:
            raise ValidationError(f"{name} is required.", field=name)

    image = payload.get("gameImage")
    if image is not None and (not isinstance(image, str) or len(image) > MAX_IMAGE_LENGTH):
        raise ValidationError("Invalid gameImage.", field="gameImage")

    return CreateRequest(
        challenged_id=validate_user_id(payload["challengedId"], "challengedId"),
        game_ref=validate_game_ref(payload["gameRef"]),
        game_title=validate_title(payload["gameTitle"]),
        bet_amount=validate_bet_amount(payload["betAmount"], config),
        game_image=image or None,
    )
