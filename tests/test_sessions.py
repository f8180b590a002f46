import pytest

from authcore.service.errors import ConflictError, StoreUnavailableError
from authcore.storage.errors import StorageUnavailable
from authcore.storage.models import ClientMeta

PASSWORD = "Password123!"


async def _user(stack, email="alice@example.com"):
    return await stack.credentials.create(email, PASSWORD, "Alice")


async def test_create_session_defaults_to_seven_days(stack):
    user = await _user(stack)
    meta = ClientMeta(user_agent="pytest", ip_addr="10.0.0.1", device_fingerprint="fp-1")

    session = await stack.sessions.create(user.id, meta)

    assert session.user_id == user.id
    assert session.is_valid
    assert (session.expires_at - session.created_at).days == 7
    assert session.user_agent == "pytest"
    assert session.ip_addr == "10.0.0.1"
    assert session.device_fingerprint == "fp-1"


async def test_create_session_for_missing_user_conflicts(stack):
    with pytest.raises(ConflictError):
        await stack.sessions.create("no-such-user")


async def test_find_active_checks_owner_validity_and_expiry(stack):
    alice = await _user(stack)
    bob = await _user(stack, "bob@example.com")
    session = await stack.sessions.create(alice.id, ttl_minutes=60)

    assert (await stack.sessions.find_active(session.id, alice.id)).id == session.id
    assert await stack.sessions.find_active(session.id, bob.id) is None
    assert await stack.sessions.find_active("unknown", alice.id) is None
    assert await stack.sessions.find_active("", alice.id) is None

    stack.clock.advance(minutes=61)
    # Expired sessions are rejected even before the reaper removes them
    assert await stack.sessions.find_active(session.id, alice.id) is None
    assert stack.store.get_session(session.id) is not None


async def test_invalidate_is_idempotent_and_owner_scoped(stack):
    alice = await _user(stack)
    bob = await _user(stack, "bob@example.com")
    session = await stack.sessions.create(alice.id)

    assert not await stack.sessions.invalidate(session.id, bob.id)
    assert stack.store.get_session(session.id).is_valid

    assert await stack.sessions.invalidate(session.id, alice.id)
    assert not await stack.sessions.invalidate(session.id, alice.id)

    stored = stack.store.get_session(session.id)
    assert not stored.is_valid
    assert stored.invalidated_at == stack.clock.now


async def test_invalidate_all_except_keeps_one_and_reports_flipped(stack):
    alice = await _user(stack)
    bob = await _user(stack, "bob@example.com")
    keep = await stack.sessions.create(alice.id)
    other_a = await stack.sessions.create(alice.id)
    other_b = await stack.sessions.create(alice.id)
    bobs = await stack.sessions.create(bob.id)
    await stack.sessions.invalidate(other_b.id, alice.id)

    flipped = await stack.sessions.invalidate_all_except(alice.id, keep.id)

    # Already-invalid sessions are not reported again
    assert flipped == [other_a.id]
    assert stack.store.get_session(keep.id).is_valid
    assert stack.store.get_session(bobs.id).is_valid
    assert await stack.sessions.invalidate_all_except(alice.id, keep.id) == []


async def test_invalidate_all_except_leaves_newer_sessions(stack):
    user = await _user(stack)
    older = await stack.sessions.create(user.id)
    stack.clock.advance(seconds=5)
    cutoff = stack.clock.now
    current = await stack.sessions.create(user.id)
    stack.clock.advance(seconds=5)
    newer = await stack.sessions.create(user.id)

    flipped = await stack.sessions.invalidate_all_except(
        user.id, current.id, created_before=cutoff
    )

    assert flipped == [older.id]
    assert stack.store.get_session(newer.id).is_valid


async def test_list_active_and_purge_expired(stack):
    user = await _user(stack)
    short = await stack.sessions.create(user.id, ttl_minutes=10)
    long = await stack.sessions.create(user.id)
    dead = await stack.sessions.create(user.id)
    await stack.sessions.invalidate(dead.id, user.id)

    active = await stack.sessions.list_active(user.id)
    assert {s.id for s in active} == {short.id, long.id}

    stack.clock.advance(minutes=11)
    assert [s.id for s in await stack.sessions.list_active(user.id)] == [long.id]

    assert await stack.sessions.purge_expired() == 1
    assert stack.store.get_session(short.id) is None
    assert stack.store.get_session(long.id) is not None


async def test_touch_updates_activity_for_active_sessions_only(stack):
    user = await _user(stack)
    session = await stack.sessions.create(user.id)
    stack.clock.advance(minutes=5)

    assert await stack.sessions.touch(session.id)
    assert stack.store.get_session(session.id).last_activity_at == stack.clock.now

    await stack.sessions.invalidate(session.id, user.id)
    assert not await stack.sessions.touch(session.id)


async def test_reads_retry_transient_outages(stack):
    user = await _user(stack)
    session = await stack.sessions.create(user.id)
    real_get = stack.store.get_session
    calls = []

    def flaky_get(session_id):
        calls.append(session_id)
        if len(calls) < 3:
            raise StorageUnavailable("timeout", operation="get_session")
        return real_get(session_id)

    stack.store.get_session = flaky_get

    found = await stack.sessions.find_active(session.id, user.id)

    assert found.id == session.id
    assert len(calls) == 3


async def test_reads_give_up_with_store_unavailable(stack):
    def broken_get(session_id):
        raise StorageUnavailable("timeout", operation="get_session")

    stack.store.get_session = broken_get

    with pytest.raises(StoreUnavailableError) as excinfo:
        await stack.sessions.get("any")
    assert excinfo.value.status_code == 503
    assert excinfo.value.retryable


async def test_create_is_not_retried(stack):
    user = await _user(stack)
    calls = []

    def broken_create(session):
        calls.append(session.id)
        raise StorageUnavailable("timeout", operation="create_session")

    stack.store.create_session = broken_create

    with pytest.raises(StoreUnavailableError):
        await stack.sessions.create(user.id)
    assert len(calls) == 1
