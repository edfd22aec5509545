import contextlib
import uuid
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from tritonpaste.logging import get_logger
from tritonpaste.service.tokens import generate_token
from tritonpaste.storage.errors import ConstraintViolation, StoreError
from tritonpaste.storage.models import AuthType
from tritonpaste.storage.postgres import PostgresStore, PostgresTransaction


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, row=None, rowcount=0, error=None):
        self.row = row
        self.rowcount = rowcount
        self.error = error
        self.calls = []
        self.committed = False
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.calls.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return FakeCursor(self.row, self.rowcount)

    @contextlib.contextmanager
    def transaction(self):
        try:
            yield
        except BaseException:
            self.rolled_back = True
            raise
        self.committed = True


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error
        self.timeouts = []

    @contextlib.contextmanager
    def connection(self, timeout=None):
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "auth_type": "oauth",
        "oauth_id": "g-1",
        "created_at": datetime.now(timezone.utc),
    }
    row.update(overrides)
    return row


def test_get_user_by_oauth_id_maps_row():
    row = _user_row()
    conn = FakeConnection(row=row)
    user = PostgresTransaction(conn).get_user_by_oauth_id("g-1")

    assert user.id == str(row["id"])
    assert user.auth_type is AuthType.OAUTH
    assert user.oauth_id == "g-1"
    sql, params = conn.calls[0]
    assert "auth_type = %s AND oauth_id = %s" in sql
    assert params == ("oauth", "g-1")


def test_get_anonymous_user_filters_on_auth_type():
    user_id = str(uuid.uuid4())
    conn = FakeConnection(row=None)
    assert PostgresTransaction(conn).get_anonymous_user(user_id) is None
    sql, params = conn.calls[0]
    assert "auth_type = %s" in sql
    assert params == (uuid.UUID(user_id), "anonymous")


def test_create_user_uses_given_id():
    user_id = str(uuid.uuid4())
    conn = FakeConnection(
        row=_user_row(id=uuid.UUID(user_id), auth_type="anonymous", oauth_id=None)
    )
    user = PostgresTransaction(conn).create_user(AuthType.ANONYMOUS, user_id=user_id)
    assert user.id == user_id
    _, params = conn.calls[0]
    assert params == (uuid.UUID(user_id), "anonymous", None)


def test_create_user_unique_violation_becomes_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        PostgresTransaction(conn).create_user(AuthType.OAUTH, "g-1")
    assert excinfo.value.detail == {"field": "oauth_id"}


def test_create_token_persists_hash_not_plaintext():
    conn = FakeConnection()
    token = generate_token(str(uuid.uuid4()))
    PostgresTransaction(conn).create_token(token)
    _, params = conn.calls[0]
    assert params[0] == token.hash
    assert token.plaintext not in [p for p in params if isinstance(p, str)]


def test_create_token_for_unknown_user_is_constraint_violation():
    conn = FakeConnection(error=errors.ForeignKeyViolation("no user"))
    with pytest.raises(ConstraintViolation):
        PostgresTransaction(conn).create_token(generate_token(str(uuid.uuid4())))


def test_get_user_by_token_checks_scope_and_expiry():
    now = datetime.now(timezone.utc)
    conn = FakeConnection(row=_user_row())
    user = PostgresTransaction(conn).get_user_by_token(b"h" * 32, "authentication", now)
    assert user is not None
    sql, params = conn.calls[0]
    assert "t.expiry > %s" in sql
    assert params == (b"h" * 32, "authentication", now)


def test_delete_tokens_reports_rowcount():
    conn = FakeConnection(rowcount=4)
    assert PostgresTransaction(conn).delete_tokens_for_user(str(uuid.uuid4())) == 4


def test_transaction_commits_on_success():
    conn = FakeConnection(row=_user_row())
    store = _store(FakePool(conn))
    with store.transaction() as tx:
        tx.get_user_by_oauth_id("g-1")
    assert conn.committed
    assert not conn.rolled_back


def test_transaction_rolls_back_and_wraps_driver_errors():
    conn = FakeConnection(error=psycopg.OperationalError("server closed the connection"))
    store = _store(FakePool(conn))
    with pytest.raises(StoreError) as excinfo:
        with store.transaction() as tx:
            tx.get_user_by_oauth_id("g-1")
    assert not isinstance(excinfo.value, ConstraintViolation)
    assert conn.rolled_back


def test_transaction_rolls_back_on_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation):
        with store.transaction() as tx:
            tx.create_user(AuthType.OAUTH, "g-1")
    assert conn.rolled_back


def test_pool_exhaustion_is_store_error():
    store = _store(FakePool(error=PoolTimeout("couldn't get a connection")))
    with pytest.raises(StoreError, match="connection pool exhausted"):
        with store.transaction():
            pass


def test_verify_connection_bounds_wait():
    conn = FakeConnection(row={"?column?": 1})
    pool = FakePool(conn)
    _store(pool).verify_connection(timeout=1.5)
    assert pool.timeouts == [1.5]
    assert conn.calls == [
        ("SELECT set_config('statement_timeout', %s, true)", ("1500ms",)),
        ("SELECT 1", None),
    ]
