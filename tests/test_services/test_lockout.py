# tests/test_services/test_lockout.py

import pytest

from passkeys.core.exceptions import ErrorKind, InfrastructureError, LockedOutError
from passkeys.services.lockout import MemoryLockoutGuard, RedisLockoutGuard, _username_index, lockout_key
from tests.fixtures.app import FakeClock, make_policy

POLICY = make_policy(lockout_threshold=3, lockout_duration_seconds=900, rate_limit_window_seconds=300)
IP = "203.0.113.7"


@pytest.fixture(params=["memory", "redis"])
def guard(request, clock: FakeClock, redis_client):
    if request.param == "memory":
        return MemoryLockoutGuard(POLICY, clock=clock)
    return RedisLockoutGuard(POLICY, redis_client, store_timeout=0.5, clock=clock)


async def _fail(guard, n, username="alice", client_id=IP):
    count = 0
    for _ in range(n):
        count = await guard.record_failure(username, client_id)
    return count


# ------------------------ keys -----------------------------------------------

def test_lockout_key__normalized_and_hashed():
    assert lockout_key(" Alice ", IP) == lockout_key("alice", IP)
    assert lockout_key("alice", IP) != lockout_key("alice", "198.51.100.1")
    assert "alice" not in lockout_key("alice", IP)
    assert len(lockout_key(None, None)) == 64


# ------------------------ threshold ------------------------------------------

@pytest.mark.anyio
async def test_below_threshold__not_locked(guard):
    assert await _fail(guard, 2) == 2
    await guard.check_lockout("alice", IP)


@pytest.mark.anyio
async def test_threshold__locks_with_retry_after(guard, clock):
    assert await _fail(guard, 3) == 3
    with pytest.raises(LockedOutError) as ei:
        await guard.check_lockout("alice", IP)
    assert ei.value.kind is ErrorKind.LOCKED_OUT
    assert ei.value.retry_after == 900

    clock.advance(600)
    with pytest.raises(LockedOutError) as ei:
        await guard.check_lockout("ALICE", IP)
    assert ei.value.retry_after == 300


@pytest.mark.anyio
async def test_lockout__expires_after_duration(guard, clock):
    await _fail(guard, 3)
    clock.advance(900)
    await guard.check_lockout("alice", IP)


@pytest.mark.anyio
async def test_lockout__scoped_to_username_and_client(guard):
    await _fail(guard, 3)
    await guard.check_lockout("alice", "198.51.100.1")
    await guard.check_lockout("bob", IP)


@pytest.mark.anyio
async def test_window__old_failures_pruned(guard, clock):
    await _fail(guard, 2)
    clock.advance(301)
    assert await _fail(guard, 1) == 1
    await guard.check_lockout("alice", IP)


@pytest.mark.anyio
async def test_unknown_username__still_counted(guard):
    await _fail(guard, 3, username="nobody-here")
    with pytest.raises(LockedOutError):
        await guard.check_lockout("nobody-here", IP)


# ------------------------ success / reset ------------------------------------

@pytest.mark.anyio
async def test_success__clears_failures(guard):
    await _fail(guard, 2)
    await guard.record_success("alice", IP)
    assert await _fail(guard, 1) == 1
    await guard.check_lockout("alice", IP)


@pytest.mark.anyio
async def test_reset_lockout__clears_every_client_of_username(guard):
    await _fail(guard, 3, client_id=IP)
    await _fail(guard, 3, client_id="198.51.100.1")
    await _fail(guard, 3, username="bob")

    assert await guard.reset_lockout("Alice") == 2

    await guard.check_lockout("alice", IP)
    await guard.check_lockout("alice", "198.51.100.1")
    with pytest.raises(LockedOutError):
        await guard.check_lockout("bob", IP)
    assert await guard.reset_lockout("alice") == 0


# ------------------------ backend specifics ----------------------------------

@pytest.mark.anyio
async def test_memory__failure_count(clock):
    guard = MemoryLockoutGuard(POLICY, clock=clock)
    await _fail(guard, 2)
    assert await guard.failure_count("alice", IP) == 2
    clock.advance(301)
    assert await guard.failure_count("alice", IP) == 0


@pytest.mark.anyio
async def test_redis__outage_never_counts_as_failure(redis_client, mock_redis, clock):
    guard = RedisLockoutGuard(POLICY, redis_client, store_timeout=0.5, clock=clock)
    mock_redis.broken = True
    with pytest.raises(InfrastructureError):
        await guard.record_failure("alice", IP)
    with pytest.raises(InfrastructureError):
        await guard.check_lockout("alice", IP)

    mock_redis.broken = False
    assert await guard.record_failure("alice", IP) == 1


# ------------------------ memory sweep ---------------------------------------

@pytest.mark.anyio
async def test_memory__stale_keys_swept_on_next_failure(clock):
    guard = MemoryLockoutGuard(POLICY, clock=clock)
    for i in range(500):
        await guard.record_failure(f"sprayed-{i}", IP)
    assert guard.tracked_keys == 500

    clock.advance(10 * 24 * 3600)
    await guard.record_failure("alice", IP)

    assert guard.tracked_keys == 1
    assert set(guard._index) == {_username_index("alice")}


@pytest.mark.anyio
async def test_memory__sweep_keeps_live_windows_and_lockouts(clock):
    guard = MemoryLockoutGuard(POLICY, clock=clock)
    await _fail(guard, 3, "locked")
    await _fail(guard, 1, "stale")
    clock.advance(POLICY.rate_limit_window_seconds + 1)
    await _fail(guard, 1, "fresh")

    assert guard.tracked_keys == 2
    with pytest.raises(LockedOutError):
        await guard.check_lockout("locked", IP)
    assert await guard.failure_count("fresh", IP) == 1
    assert await guard.reset_lockout("stale") == 0

    clock.advance(POLICY.lockout_duration_seconds)
    assert await guard.purge_expired() == 2
    assert guard.tracked_keys == 0
    assert guard._index == {}


@pytest.mark.anyio
async def test_memory__success_drops_username_index(clock):
    guard = MemoryLockoutGuard(POLICY, clock=clock)
    await _fail(guard, 2)
    await guard.record_success("alice", IP)
    assert guard.tracked_keys == 0
    assert guard._index == {}
