from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tritonpaste.logging import get_logger
from tritonpaste.storage.errors import ConstraintViolation, StoreError
from tritonpaste.storage.models import AuthType, Token, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        auth_type TEXT NOT NULL CHECK (auth_type IN ('oauth', 'anonymous')),
        oauth_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK ((auth_type = 'oauth') = (oauth_id IS NOT NULL))
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_oauth_idx
        ON app_user (auth_type, oauth_id) WHERE auth_type = 'oauth'
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        hash BYTEA PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expiry TIMESTAMPTZ NOT NULL,
        scope TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token (user_id)",
)


def _as_uuid(value: str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        auth_type=AuthType(row["auth_type"]),
        oauth_id=row.get("oauth_id"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


class PostgresTransaction:
    """Query surface bound to one pooled connection and its open transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    # users
    def create_user(
        self,
        auth_type: AuthType,
        oauth_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> User:
        auth_type = AuthType(auth_type)
        new_id = _as_uuid(user_id) if user_id else uuid.uuid4()
        try:
            row = self.conn.execute(
                """
                INSERT INTO app_user (id, auth_type, oauth_id)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (new_id, auth_type.value, oauth_id),
            ).fetchone()
        except errors.UniqueViolation as exc:
            field = "id" if "pkey" in (exc.diag.constraint_name or "") else "oauth_id"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM app_user WHERE id = %s", (_as_uuid(user_id),)
        ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_oauth_id(self, oauth_id: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM app_user WHERE auth_type = %s AND oauth_id = %s",
            (AuthType.OAUTH.value, oauth_id),
        ).fetchone()
        return _user_from_row(row) if row else None

    def get_anonymous_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM app_user WHERE id = %s AND auth_type = %s",
            (_as_uuid(user_id), AuthType.ANONYMOUS.value),
        ).fetchone()
        return _user_from_row(row) if row else None

    # tokens
    def create_token(self, token: Token) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO auth_token (hash, user_id, expiry, scope)
                VALUES (%s, %s, %s, %s)
                """,
                (token.hash, _as_uuid(token.user_id), token.expiry, token.scope),
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "token user missing", {"user_id": token.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "token hash already exists", {"field": "hash"}
            ) from exc

    def get_user_by_token(
        self, token_hash: bytes, scope: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        row = self.conn.execute(
            """
            SELECT u.* FROM auth_token t
            JOIN app_user u ON u.id = t.user_id
            WHERE t.hash = %s AND t.scope = %s AND t.expiry > %s
            """,
            (token_hash, scope, now or datetime.now(timezone.utc)),
        ).fetchone()
        return _user_from_row(row) if row else None

    def delete_tokens_for_user(self, user_id: str) -> int:
        result = self.conn.execute(
            "DELETE FROM auth_token WHERE user_id = %s", (_as_uuid(user_id),)
        )
        return result.rowcount


class PostgresStore:
    """Postgres-backed user and token store over a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        pool_timeout: float = 10.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=pool_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    def _connect(self, timeout: Optional[float] = None):
        return self.pool.connection(timeout=timeout)

    def _ensure_schema(self) -> None:
        """Create the user and token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        """Borrow a connection and run one transaction on it.

        Commits when the block exits normally and rolls back on any exception;
        the connection goes back to the pool either way.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    yield PostgresTransaction(conn)
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_exhausted", error=str(exc))
            raise StoreError(f"connection pool exhausted: {exc}") from exc
        except errors.IntegrityError as exc:
            raise ConstraintViolation(str(exc)) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_transaction_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(str(exc)) from exc

    def verify_connection(self, timeout: float = 1.0) -> None:
        """Borrow a connection within ``timeout`` and run a trivial query.

        The query runs under a transaction-local ``statement_timeout`` of the
        same length, so a stalled server fails the check instead of hanging it.
        """
        with self._connect(timeout=timeout) as conn:
            conn.execute(
                "SELECT set_config('statement_timeout', %s, true)",
                (f"{int(timeout * 1000)}ms",),
            )
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

