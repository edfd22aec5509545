from __future__ import annotations

import contextlib
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

from tritonpaste.logging import get_logger
from tritonpaste.storage.errors import ConstraintViolation
from tritonpaste.storage.models import AuthType, Token, User


class MemoryTransaction:
    """Query surface bound to one open :class:`MemoryStore` transaction."""

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store

    # users
    def create_user(
        self,
        auth_type: AuthType,
        oauth_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> User:
        auth_type = AuthType(auth_type)
        if (auth_type == AuthType.OAUTH) != (oauth_id is not None):
            raise ValueError("oauth_id is required for oauth users and forbidden otherwise")
        new_id = user_id or str(uuid.uuid4())
        users = self._store.users
        if new_id in users:
            raise ConstraintViolation("user id already exists", {"field": "id"})
        if auth_type == AuthType.OAUTH and any(
            u.auth_type == AuthType.OAUTH and u.oauth_id == oauth_id
            for u in users.values()
        ):
            raise ConstraintViolation("oauth id already exists", {"field": "oauth_id"})
        user = User(id=new_id, auth_type=auth_type, oauth_id=oauth_id)
        users[new_id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._store.users.get(user_id)

    def get_user_by_oauth_id(self, oauth_id: str) -> Optional[User]:
        return next(
            (
                u
                for u in self._store.users.values()
                if u.auth_type == AuthType.OAUTH and u.oauth_id == oauth_id
            ),
            None,
        )

    def get_anonymous_user(self, user_id: str) -> Optional[User]:
        user = self._store.users.get(user_id)
        if user and user.auth_type == AuthType.ANONYMOUS:
            return user
        return None

    # tokens
    def create_token(self, token: Token) -> None:
        if token.user_id not in self._store.users:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        if token.hash in self._store.tokens:
            raise ConstraintViolation("token hash already exists", {"field": "hash"})
        # Never keep the plaintext around
        self._store.tokens[token.hash] = Token(
            hash=token.hash,
            user_id=token.user_id,
            expiry=token.expiry,
            scope=token.scope,
        )

    def get_user_by_token(
        self, token_hash: bytes, scope: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        token = self._store.tokens.get(token_hash)
        if not token or not token.is_valid(scope, now or datetime.now(timezone.utc)):
            return None
        return self._store.users.get(token.user_id)

    def delete_tokens_for_user(self, user_id: str) -> int:
        tokens = self._store.tokens
        stale = [h for h, tok in tokens.items() if tok.user_id == user_id]
        for token_hash in stale:
            tokens.pop(token_hash, None)
        return len(stale)


class MemoryStore:
    """In-process store with the same transaction contract as ``PostgresStore``.

    Transactions are serialised by a re-entrant lock; on any exception the
    user and token tables are restored to their state at ``BEGIN``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[bytes, Token] = {}
        self._data_lock = threading.RLock()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[MemoryTransaction]:
        with self._data_lock:
            users_snapshot = dict(self.users)
            tokens_snapshot = dict(self.tokens)
            try:
                yield MemoryTransaction(self)
            except BaseException:
                self.users = users_snapshot
                self.tokens = tokens_snapshot
                self.logger.debug("memory_transaction_rolled_back")
                raise

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
