from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Session

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryStore()


def test_email_uniqueness_is_case_insensitive(store):
    store.create_user("Alice@Example.com", "hash", "Alice")

    with pytest.raises(ConstraintViolation):
        store.create_user("alice@example.COM", "hash", "Alice 2")
    assert store.get_user_by_email(" ALICE@example.com ").name == "Alice"


def test_returned_records_are_copies(store):
    user = store.create_user("alice@example.com", "hash", "Alice")
    user.name = "Mallory"
    user.devices.append({"session_id": "forged"})

    stored = store.get_user(user.id)
    assert stored.name == "Alice"
    assert stored.devices == []


def test_session_requires_existing_user(store):
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new("ghost", now=NOW))


def test_delete_user_cascades_sessions_and_frees_email(store):
    user = store.create_user("alice@example.com", "hash", "Alice")
    session = store.create_session(Session.new(user.id, now=NOW))

    assert store.delete_user(user.id)
    assert store.get_session(session.id) is None
    assert not store.delete_user(user.id)
    store.create_user("alice@example.com", "hash", "Alice again")


def test_invalidated_session_never_becomes_valid_again(store):
    user = store.create_user("alice@example.com", "hash", "Alice")
    session = store.create_session(Session.new(user.id, now=NOW))

    assert store.invalidate_session(session.id, user.id, now=NOW)
    assert not store.touch_session(session.id, now=NOW + timedelta(seconds=1))
    assert store.invalidate_user_sessions(user.id, now=NOW) == []

    stored = store.get_session(session.id)
    assert not stored.is_valid
    assert stored.version == 2


def test_record_login_failure_locks_and_ignores_failures_while_locked(store):
    user = store.create_user("alice@example.com", "hash", "Alice")
    kwargs = dict(window=timedelta(minutes=30), max_attempts=3, lock_duration=timedelta(minutes=30))

    for minute in range(3):
        updated = store.record_login_failure(user.id, now=NOW + timedelta(minutes=minute), **kwargs)

    assert updated.lock_until == NOW + timedelta(minutes=32)
    assert updated.failed_login_count == 0

    again = store.record_login_failure(user.id, now=NOW + timedelta(minutes=5), **kwargs)
    assert again.lock_until == updated.lock_until
    assert again.last_failed_login_at == updated.last_failed_login_at


def test_record_login_failure_unknown_user(store):
    assert store.record_login_failure(
        "missing",
        now=NOW,
        window=timedelta(minutes=30),
        max_attempts=5,
        lock_duration=timedelta(minutes=30),
    ) is None


def test_list_user_sessions_newest_first(store):
    user = store.create_user("alice@example.com", "hash", "Alice")
    older = store.create_session(Session.new(user.id, now=NOW))
    newer = store.create_session(Session.new(user.id, now=NOW + timedelta(minutes=1)))

    assert [s.id for s in store.list_user_sessions(user.id)] == [newer.id, older.id]
