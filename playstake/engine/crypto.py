"""
playstake.engine.crypto — Challenge Record Encryption
=======================================================

Challenge records are stored as opaque envelopes::

    {"salt": <hex>, "iv": <hex>, "data": <hex>, "iterations": 100000,
     "timestamp": "<iso8601>"}

Each call to :func:`encrypt` derives a fresh key with PBKDF2-HMAC-SHA512
from the shared secret and a random salt, then seals the JSON-encoded record
with AES-256-GCM under a random IV.  GCM's tag makes tampering, truncation
and wrong-secret decryption fail loudly instead of returning garbage.
"""

from __future__ import annotations

import json
import os
import secrets
from datetime import UTC, datetime

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from playstake.engine.errors import DecryptionError

SALT_LENGTH = 32
IV_LENGTH = 12  # GCM nonce
KEY_LENGTH = 32  # AES-256
DEFAULT_ITERATIONS = 100_000
MIN_SECRET_LENGTH = 32

_PLACEHOLDER_SECRETS = frozenset({
    "your-32-character-secret-key-here!",
    "change-me",
    "secret",
    "",
})


def generate_challenge_id() -> str:
    """32 lowercase hex characters from the OS CSPRNG."""
    return secrets.token_hex(16)


def derive_key(secret: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(record: dict, secret: str, *, iterations: int = DEFAULT_ITERATIONS) -> dict:
    """Seal *record* (any JSON-serialisable dict) into a new envelope."""
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(secret, salt, iterations)
    plaintext = json.dumps(record, separators=(",", ":"), sort_keys=True).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
    return {
        "salt": salt.hex(),
        "iv": iv.hex(),
        "data": ciphertext.hex(),
        "iterations": iterations,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def decrypt(envelope: dict, secret: str, *, iterations: int = DEFAULT_ITERATIONS) -> dict:
    """Open an envelope produced by :func:`encrypt`.

    The iteration count recorded in the envelope wins over *iterations*, so
    records sealed before a KDF cost change still open.

    Raises
    ------
    DecryptionError
        On a wrong secret, a tampered or truncated envelope, or anything
        that is not an envelope at all.
    """
    try:
        salt = bytes.fromhex(envelope["salt"])
        iv = bytes.fromhex(envelope["iv"])
        ciphertext = bytes.fromhex(envelope["data"])
        rounds = int(envelope.get("iterations", iterations))
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise DecryptionError(f"Malformed envelope: {exc}") from exc

    if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH or rounds <= 0:
        raise DecryptionError("Malformed envelope: bad salt/iv/iterations")

    key = derive_key(secret, salt, rounds)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("Envelope failed authentication") from exc

    try:
        record = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionError("Decrypted payload is not JSON") from exc
    if not isinstance(record, dict):
        raise DecryptionError("Decrypted payload is not an object")
    return record


def validate_secret(secret: str) -> str:
    """Reject missing, short, or placeholder secrets.

    Raises
    ------
    RuntimeError
        With a hint on how to generate a proper secret.
    """
    if secret in _PLACEHOLDER_SECRETS:
        raise RuntimeError(
            "CHALLENGE_ENCRYPTION_KEY is missing or set to a placeholder. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
        )
    if len(secret) < MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"CHALLENGE_ENCRYPTION_KEY is too short ({len(secret)} chars). "
            f"Minimum length is {MIN_SECRET_LENGTH} characters."
        )
    return secret


class ChallengeCodec:
    """Binds the shared secret and KDF cost so callers only pass records."""

    def __init__(self, secret: str, *, iterations: int = DEFAULT_ITERATIONS) -> None:
        self._secret = validate_secret(secret)
        self.iterations = iterations

    def encrypt(self, record: dict) -> dict:
        return encrypt(record, self._secret, iterations=self.iterations)

    def decrypt(self, envelope: dict) -> dict:
        return decrypt(envelope, self._secret, iterations=self.iterations)

    def __repr__(self) -> str:
        return f"<ChallengeCodec iterations={self.iterations}>"
