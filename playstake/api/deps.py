"""
playstake.api.deps — FastAPI dependency injection
===================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from playstake.config import WagerConfig, load_config
from playstake.database.engine import create_db_engine
from playstake.database.store import SqlDocumentStore
from playstake.engine.crypto import ChallengeCodec
from playstake.services.challenge_service import ChallengeService
from playstake.services.ledger import EscrowLedger
from playstake.services.notifications import StoreNotificationSink

_WEAK_SECRETS = frozenset({
    "playstake-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> WagerConfig:
    return load_config(os.getenv("PLAYSTAKE_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_codec() -> ChallengeCodec:
    return ChallengeCodec(
        os.getenv("CHALLENGE_ENCRYPTION_KEY", ""),
        iterations=get_config().kdf_iterations,
    )


def get_store(engine: Annotated[Engine, Depends(get_engine)]) -> SqlDocumentStore:
    return SqlDocumentStore(engine)


def get_ledger(store: Annotated[SqlDocumentStore, Depends(get_store)]) -> EscrowLedger:
    return EscrowLedger(store)


def get_challenge_service(
    store: Annotated[SqlDocumentStore, Depends(get_store)],
    codec: Annotated[ChallengeCodec, Depends(get_codec)],
    config: Annotated[WagerConfig, Depends(get_config)],
) -> ChallengeService:
    return ChallengeService(store, codec, config, notifier=StoreNotificationSink(store))


def _decode_bearer(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return payload


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Validate the bearer JWT and return the caller's user id (``sub``)."""
    return str(_decode_bearer(authorization)["sub"])


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401 if invalid."""
    payload = _decode_bearer(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload
