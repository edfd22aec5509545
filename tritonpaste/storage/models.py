from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthType(str, Enum):
    """How a user proved who they are."""

    OAUTH = "oauth"
    ANONYMOUS = "anonymous"


@dataclass
class User:
    id: str
    auth_type: AuthType
    oauth_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Token:
    """A bearer token.

    ``plaintext`` only exists between generation and the response that hands
    it to the client; stores persist ``hash`` and never see the plaintext.
    """

    hash: bytes
    user_id: str
    expiry: datetime
    scope: str
    plaintext: Optional[str] = field(default=None, repr=False)

    def is_valid(self, scope: str, now: Optional[datetime] = None) -> bool:
        current = now or _utcnow()
        return self.scope == scope and current < self.expiry
