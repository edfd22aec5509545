import uuid
from datetime import datetime, timedelta, timezone

import pytest

from tritonpaste.service.tokens import SCOPE_AUTHENTICATION, generate_token
from tritonpaste.storage.errors import ConstraintViolation
from tritonpaste.storage.memory import MemoryStore
from tritonpaste.storage.models import AuthType


@pytest.fixture
def store():
    return MemoryStore()


def test_create_and_find_oauth_user(store):
    with store.transaction() as tx:
        user = tx.create_user(AuthType.OAUTH, "g-1")
    with store.transaction() as tx:
        assert tx.get_user_by_oauth_id("g-1") == user
        assert tx.get_anonymous_user(user.id) is None


def test_anonymous_user_keeps_requested_id(store):
    user_id = str(uuid.uuid4())
    with store.transaction() as tx:
        user = tx.create_user(AuthType.ANONYMOUS, user_id=user_id)
    assert user.id == user_id
    assert user.oauth_id is None
    with store.transaction() as tx:
        assert tx.get_anonymous_user(user_id) == user
        assert tx.get_user_by_oauth_id(user_id) is None


def test_oauth_id_required_only_for_oauth_users(store):
    with store.transaction() as tx:
        with pytest.raises(ValueError):
            tx.create_user(AuthType.OAUTH)
        with pytest.raises(ValueError):
            tx.create_user(AuthType.ANONYMOUS, "g-1")


def test_duplicate_oauth_id_violates_constraint(store):
    with store.transaction() as tx:
        tx.create_user(AuthType.OAUTH, "g-1")
    with pytest.raises(ConstraintViolation):
        with store.transaction() as tx:
            tx.create_user(AuthType.OAUTH, "g-1")
    assert len(store.users) == 1


def test_duplicate_user_id_violates_constraint(store):
    user_id = str(uuid.uuid4())
    with store.transaction() as tx:
        tx.create_user(AuthType.ANONYMOUS, user_id=user_id)
    with pytest.raises(ConstraintViolation):
        with store.transaction() as tx:
            tx.create_user(AuthType.ANONYMOUS, user_id=user_id)


def test_token_lookup_respects_scope_and_expiry(store):
    now = datetime.now(timezone.utc)
    with store.transaction() as tx:
        user = tx.create_user(AuthType.OAUTH, "g-1")
        token = generate_token(user.id, timedelta(hours=1), now=now)
        tx.create_token(token)

    with store.transaction() as tx:
        assert tx.get_user_by_token(token.hash, SCOPE_AUTHENTICATION, now) == user
        assert tx.get_user_by_token(token.hash, "activation", now) is None
        assert (
            tx.get_user_by_token(
                token.hash, SCOPE_AUTHENTICATION, now + timedelta(hours=1)
            )
            is None
        )


def test_stored_token_drops_plaintext(store):
    with store.transaction() as tx:
        user = tx.create_user(AuthType.OAUTH, "g-1")
        token = generate_token(user.id)
        tx.create_token(token)
    assert store.tokens[token.hash].plaintext is None


def test_token_for_missing_user_violates_constraint(store):
    with pytest.raises(ConstraintViolation):
        with store.transaction() as tx:
            tx.create_token(generate_token(str(uuid.uuid4())))
    assert store.tokens == {}


def test_delete_tokens_for_user_only_touches_that_user(store):
    with store.transaction() as tx:
        alice = tx.create_user(AuthType.OAUTH, "alice")
        bob = tx.create_user(AuthType.OAUTH, "bob")
        for _ in range(3):
            tx.create_token(generate_token(alice.id))
        bob_token = generate_token(bob.id)
        tx.create_token(bob_token)

    with store.transaction() as tx:
        assert tx.delete_tokens_for_user(alice.id) == 3
        assert tx.delete_tokens_for_user(alice.id) == 0
    assert list(store.tokens) == [bob_token.hash]
    assert alice.id in store.users


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            user = tx.create_user(AuthType.OAUTH, "g-1")
            tx.create_token(generate_token(user.id))
            raise RuntimeError("boom")
    assert store.users == {}
    assert store.tokens == {}
