from __future__ import annotations

import asyncio
import contextlib
import secrets
import threading
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional, Protocol, Tuple, TypeVar, Union

from tritonpaste.config import Settings
from tritonpaste.logging import get_logger
from tritonpaste.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tritonpaste.service.oauth import OAuthClient
from tritonpaste.service.tokens import (
    SCOPE_AUTHENTICATION,
    SESSION_TTL,
    TokenGenerationError,
    generate_token,
    hash_token,
    validate_token_plaintext,
)
from tritonpaste.storage.errors import ConstraintViolation, StoreError
from tritonpaste.storage.models import AuthType, Token, User
from tritonpaste.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_AUTH_TOKEN = "invalid or missing authentication token"
OAUTH_CONFLICT = "User already exists with this OAuth ID!"
ANONYMOUS_CONFLICT = "user already exists with this ID!"
TOKEN_STORE_FAILED = "error in token storage"

T = TypeVar("T")

# Set by the worker thread's caller when it stops waiting for the result
_cancel_event: ContextVar[Optional[threading.Event]] = ContextVar(
    "store_call_cancel_event", default=None
)


class OperationCancelled(Exception):
    """The awaiting request was cancelled before its transaction committed."""


async def run_store_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store-bound call on a worker thread.

    If the awaiting task is cancelled (client disconnect, shutdown, caller
    timeout) the thread is told so, and a transaction it opened rolls back
    instead of committing.
    """
    event = threading.Event()
    reset_token = _cancel_event.set(event)
    try:
        # to_thread copies the current context, event included
        return await asyncio.to_thread(func, *args, **kwargs)
    except asyncio.CancelledError:
        event.set()
        raise
    finally:
        _cancel_event.reset(reset_token)


class AuthTransaction(Protocol):
    def create_user(
        self,
        auth_type: AuthType,
        oauth_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> User: ...

    def get_user_by_oauth_id(self, oauth_id: str) -> Optional[User]: ...

    def get_anonymous_user(self, user_id: str) -> Optional[User]: ...

    def create_token(self, token: Token) -> None: ...

    def get_user_by_token(
        self, token_hash: bytes, scope: str, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def delete_tokens_for_user(self, user_id: str) -> int: ...


class AuthStore(Protocol):
    def transaction(self) -> contextlib.AbstractContextManager[AuthTransaction]: ...


@dataclass(frozen=True)
class AnonymousIdentity:
    """A request that carried no ``Authorization`` header."""

    @property
    def is_anonymous(self) -> bool:
        return True


@dataclass(frozen=True)
class UserIdentity:
    user: User

    @property
    def is_anonymous(self) -> bool:
        return False

    @property
    def user_id(self) -> str:
        return self.user.id


Identity = Union[AnonymousIdentity, UserIdentity]


class AuthService:
    """Identity resolution, session tokens, and the OAuth login flow.

    Methods that touch the store are synchronous and run in one store
    transaction each; the identity resolvers and ``issue_session`` accept an
    open ``tx`` to join instead, which is how ``login_oauth`` and
    ``register_anonymous`` commit the user and its first token together.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        oauth_client: Optional[OAuthClient] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.oauth = oauth_client or OAuthClient(settings)
        self.session_ttl = SESSION_TTL
        self.oauth_state_ttl = timedelta(minutes=settings.oauth_state_ttl_minutes)
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _transaction(
        self,
        tx: Optional[AuthTransaction] = None,
        *,
        conflict_message: str = "user already exists",
        conflict_error: type[ServerError | ValidationError] = ConflictError,
    ) -> Iterator[AuthTransaction]:
        """Open a store transaction, or join ``tx`` when the caller holds one.

        Store failures leave as service errors, after the store has rolled
        back: constraint violations become ``conflict_error`` and anything
        else ``ServerError``. A transaction opened here is rolled back rather
        than committed once the awaiting request has been cancelled.
        """
        try:
            if tx is not None:
                yield tx
            else:
                with self.store.transaction() as new_tx:
                    yield new_tx
                    self._raise_if_cancelled()
        except ConstraintViolation as exc:
            self.logger.warning(
                "auth_store_conflict", error=exc.message, detail=exc.detail
            )
            raise conflict_error(conflict_message) from exc
        except StoreError as exc:
            self.logger.error("auth_store_failed", error=exc.message)
            raise ServerError(exc.message) from exc
        except TokenGenerationError as exc:
            self.logger.error("token_generation_failed", error=str(exc))
            raise ServerError("error in token generation") from exc

    def _raise_if_cancelled(self) -> None:
        event = _cancel_event.get()
        if event is not None and event.is_set():
            self.logger.warning("auth_transaction_cancelled")
            raise OperationCancelled("request cancelled before commit")

    # identity resolution
    def resolve_oauth(
        self, oauth_subject_id: str, *, tx: Optional[AuthTransaction] = None
    ) -> User:
        with self._transaction(tx, conflict_message=OAUTH_CONFLICT) as txn:
            user = txn.get_user_by_oauth_id(oauth_subject_id)
            if user is not None:
                return user
            user = txn.create_user(AuthType.OAUTH, oauth_subject_id)
            self.logger.info("oauth_user_created", user_id=user.id)
            return user

    def resolve_anonymous(self, *, tx: Optional[AuthTransaction] = None) -> User:
        with self._transaction(tx, conflict_message=ANONYMOUS_CONFLICT) as txn:
            user = txn.create_user(AuthType.ANONYMOUS, user_id=str(uuid.uuid4()))
            self.logger.info("anonymous_user_created", user_id=user.id)
            return user

    def register_oauth(self, oauth_subject_id: str) -> User:
        """Create an oauth user; unlike ``resolve_oauth`` an existing one is a conflict."""

        with self._transaction(conflict_message=OAUTH_CONFLICT) as txn:
            if txn.get_user_by_oauth_id(oauth_subject_id) is not None:
                raise ConflictError(OAUTH_CONFLICT)
            user = txn.create_user(AuthType.OAUTH, oauth_subject_id)
        self.logger.info("oauth_user_registered", user_id=user.id)
        return user

    def lookup_oauth(self, oauth_subject_id: str) -> User:
        with self._transaction() as txn:
            user = txn.get_user_by_oauth_id(oauth_subject_id)
        if user is None:
            raise NotFoundError("User not found!")
        return user

    def lookup_anonymous(self, user_id: str) -> User:
        with self._transaction() as txn:
            user = txn.get_anonymous_user(str(user_id))
        if user is None:
            raise NotFoundError("user not found!")
        return user

    # sessions
    def issue_session(
        self, user_id: str, *, tx: Optional[AuthTransaction] = None
    ) -> Token:
        with self._transaction(
            tx, conflict_message=TOKEN_STORE_FAILED, conflict_error=ServerError
        ) as txn:
            token = generate_token(
                user_id, self.session_ttl, SCOPE_AUTHENTICATION, now=self._now()
            )
            txn.create_token(token)
        self.logger.info("session_issued", user_id=user_id, expiry=token.expiry)
        return token

    def login_oauth(self, oauth_subject_id: str) -> Tuple[User, Token]:
        with self._transaction(conflict_message=OAUTH_CONFLICT) as txn:
            user = self.resolve_oauth(oauth_subject_id, tx=txn)
            token = self.issue_session(user.id, tx=txn)
        return user, token

    def register_anonymous(self) -> Tuple[User, Token]:
        with self._transaction(conflict_message=ANONYMOUS_CONFLICT) as txn:
            user = self.resolve_anonymous(tx=txn)
            token = self.issue_session(user.id, tx=txn)
        return user, token

    def logout(self, identity: Identity) -> int:
        """Delete every session token of the calling user.

        Returns:
            Number of tokens removed
        """
        if not isinstance(identity, UserIdentity):
            raise AuthenticationError("You are not logged in")
        with self._transaction() as txn:
            deleted = txn.delete_tokens_for_user(identity.user.id)
        self.logger.info(
            "logout_tokens_deleted", user_id=identity.user.id, deleted=deleted
        )
        return deleted

    # OAuth flow
    def _purge_expired_states(self, now: datetime) -> int:
        with self._state_lock:
            expired = [
                state
                for state, (_, expires_at) in self._oauth_states.items()
                if expires_at <= now
            ]
            for state in expired:
                self._oauth_states.pop(state, None)
        return len(expired)

    async def _save_state(self, state: str, expires_at: datetime) -> None:
        if self.cache:
            await self.cache.set_oauth_state(state, self.oauth.provider, expires_at)
            return
        with self._state_lock:
            self._oauth_states[state] = (self.oauth.provider, expires_at)

    async def _pop_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._oauth_states.pop(state, None)

    async def start_oauth(self) -> str:
        """Record a fresh anti-forgery state and return the provider login URL."""

        now = self._now()
        self._purge_expired_states(now)
        state = secrets.token_urlsafe(32)
        authorization_url = self.oauth.authorization_url(state)
        await self._save_state(state, now + self.oauth_state_ttl)
        self.logger.info("oauth_started", provider=self.oauth.provider)
        return authorization_url

    async def complete_oauth(
        self, code: Optional[str], state: Optional[str]
    ) -> Tuple[User, Token]:
        """Finish the provider callback: check state, exchange code, log in.

        The state record is consumed on the first attempt, whether or not the
        rest of the callback succeeds.
        """
        record = await self._pop_state(state) if state else None
        if record is None or record[1] <= self._now():
            self.logger.warning("oauth_state_invalid")
            raise ValidationError("Invalid OAuth state")
        if not code:
            raise ValidationError("Code not found")
        subject = await self.oauth.exchange(code)
        return await run_store_call(self.login_oauth, subject)

    # request authentication
    def _user_for_token(self, plaintext: str) -> Optional[User]:
        with self._transaction() as txn:
            return txn.get_user_by_token(
                hash_token(plaintext), SCOPE_AUTHENTICATION, self._now()
            )

    async def authenticate(self, authorization: Optional[str]) -> Identity:
        """Turn an ``Authorization`` header value into a request identity.

        An absent or empty header is anonymous. Anything else must be a valid
        ``Bearer <token>`` for a live session or the request is rejected.
        """
        if not authorization:
            return AnonymousIdentity()
        parts = authorization.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer":
            raise AuthenticationError(INVALID_AUTH_TOKEN)
        plaintext = parts[1]
        ok, reason = validate_token_plaintext(plaintext)
        if not ok:
            raise AuthenticationError(reason)
        user = await run_store_call(self._user_for_token, plaintext)
        if user is None:
            raise AuthenticationError(INVALID_AUTH_TOKEN)
        return UserIdentity(user)
