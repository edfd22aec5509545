"""Opaque bearer tokens: generation, shape check and hashing.

A token is 16 random bytes rendered as unpadded base-32, which is always 26
characters. Only the SHA-256 digest of that text is ever persisted.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from tritonpaste.storage.models import Token

SCOPE_AUTHENTICATION = "authentication"
SESSION_TTL = timedelta(hours=24)
TOKEN_RANDOM_BYTES = 16
TOKEN_LENGTH = 26


class TokenGenerationError(RuntimeError):
    """The system random source could not produce token bytes."""


def hash_token(plaintext: str) -> bytes:
    return hashlib.sha256(plaintext.encode("utf-8")).digest()


def validate_token_plaintext(plaintext: Optional[str]) -> Tuple[bool, str]:
    if not plaintext:
        return False, "token must be provided"
    if len(plaintext.encode("utf-8")) != TOKEN_LENGTH:
        return False, f"token must be {TOKEN_LENGTH} bytes long"
    return True, ""


def generate_token(
    user_id: str,
    ttl: timedelta = SESSION_TTL,
    scope: str = SCOPE_AUTHENTICATION,
    *,
    now: Optional[datetime] = None,
) -> Token:
    try:
        random_bytes = secrets.token_bytes(TOKEN_RANDOM_BYTES)
    except (OSError, NotImplementedError) as exc:
        raise TokenGenerationError(str(exc)) from exc
    plaintext = base64.b32encode(random_bytes).decode("ascii").rstrip("=")
    issued_at = now or datetime.now(timezone.utc)
    return Token(
        hash=hash_token(plaintext),
        user_id=user_id,
        expiry=issued_at + ttl,
        scope=scope,
        plaintext=plaintext,
    )
