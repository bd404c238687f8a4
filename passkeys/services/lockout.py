# passkeys/services/lockout.py
from __future__ import annotations

"""
Lockout Guard
=============

Sliding-window failure counting and time-boxed lockout per
(username, client id) pair.

- Key: `sha256(username + "|" + client_id)`. The username is part of the
  key even before identity is confirmed so that the "unknown user" path
  cannot be used to dodge lockout.
- `check_lockout()` runs **before** any verification work and raises
  `LockedOutError` while a lockout is active.
- `record_failure()` appends a timestamped failure, prunes entries older
  than `rate_limit_window_seconds`, and starts (or extends) a lockout of
  `lockout_duration_seconds` once the in-window count reaches
  `lockout_threshold`.
- `record_success()` clears everything for the key.
- `reset_lockout(username)` clears every client key of a username (admin
  unlock).

Store faults raise `InfrastructureError`; they never count as failures.
"""

import hashlib
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Set

from loguru import logger

from passkeys.core.exceptions import LockedOutError
from passkeys.core.policy import RelyingPartyPolicy
from passkeys.core.redis_client import RedisClient
from passkeys.services.audit_log_service import AuditEvent, log_audit_event


def _normalize(username: Optional[str]) -> str:
    return (username or "").strip().lower()


def lockout_key(username: Optional[str], client_id: Optional[str]) -> str:
    raw = f"{_normalize(username)}|{client_id or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _username_index(username: Optional[str]) -> str:
    return hashlib.sha256(_normalize(username).encode("utf-8")).hexdigest()


class LockoutGuardProtocol:
    async def check_lockout(self, username: Optional[str], client_id: Optional[str]) -> None:
        raise NotImplementedError

    async def record_failure(self, username: Optional[str], client_id: Optional[str]) -> int:
        raise NotImplementedError

    async def record_success(self, username: Optional[str], client_id: Optional[str]) -> None:
        raise NotImplementedError

    async def reset_lockout(self, username: str) -> int:
        raise NotImplementedError


def _audit_lockout(policy: RelyingPartyPolicy, username: Optional[str], client_id: Optional[str], count: int) -> None:
    logger.warning("[Passkeys] lockout triggered | failures={} duration={}s", count, policy.lockout_duration_seconds)
    log_audit_event(
        AuditEvent.LOCKOUT_TRIGGERED,
        status="BLOCKED",
        username=_normalize(username),
        client_id=client_id,
        meta_data={"failures": count, "duration_seconds": policy.lockout_duration_seconds},
        hash_usernames=policy.hash_usernames,
    )


# ─────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────
@dataclass
class _KeyState:
    failures: Deque[float] = field(default_factory=deque)
    locked_until: float = 0.0


class MemoryLockoutGuard(LockoutGuardProtocol):
    """
    Process-local guard. Keys whose failures left the window and whose
    lockout expired are swept from `record_failure` (at most once per
    `SWEEP_INTERVAL_SECONDS`) and by `purge_expired()`.
    """

    SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, policy: RelyingPartyPolicy, *, clock: Callable[[], float] = time.time) -> None:
        self.policy = policy
        self._clock = clock
        self._states: Dict[str, _KeyState] = {}
        self._index: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _prune(self, state: _KeyState, now: float) -> None:
        cutoff = now - self.policy.rate_limit_window_seconds
        while state.failures and state.failures[0] <= cutoff:
            state.failures.popleft()

    async def check_lockout(self, username: Optional[str], client_id: Optional[str]) -> None:
        now = self._clock()
        with self._lock:
            state = self._states.get(lockout_key(username, client_id))
            locked_until = state.locked_until if state else 0.0
        if locked_until > now:
            raise LockedOutError(message="lockout active", retry_after=max(1, math.ceil(locked_until - now)))

    async def record_failure(self, username: Optional[str], client_id: Optional[str]) -> int:
        now = self._clock()
        key = lockout_key(username, client_id)
        started = False
        with self._lock:
            if now - self._last_sweep >= self.SWEEP_INTERVAL_SECONDS:
                self._sweep(now)
            state = self._states.setdefault(key, _KeyState())
            self._index.setdefault(_username_index(username), set()).add(key)
            self._prune(state, now)
            state.failures.append(now)
            count = len(state.failures)
            if count >= self.policy.lockout_threshold:
                started = state.locked_until <= now
                state.locked_until = now + self.policy.lockout_duration_seconds
        if started:
            _audit_lockout(self.policy, username, client_id, count)
        return count

    async def record_success(self, username: Optional[str], client_id: Optional[str]) -> None:
        key = lockout_key(username, client_id)
        with self._lock:
            self._states.pop(key, None)
            self._unindex(_username_index(username), key)

    async def reset_lockout(self, username: str) -> int:
        with self._lock:
            keys = self._index.pop(_username_index(username), set())
            cleared = sum(1 for k in keys if self._states.pop(k, None) is not None)
        return cleared

    async def failure_count(self, username: Optional[str], client_id: Optional[str]) -> int:
        with self._lock:
            state = self._states.get(lockout_key(username, client_id))
            if state is None:
                return 0
            self._prune(state, self._clock())
            return len(state.failures)

    async def purge_expired(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    @property
    def tracked_keys(self) -> int:
        return len(self._states)

    def _unindex(self, user_index: str, key: str) -> None:
        keys = self._index.get(user_index)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._index[user_index]

    def _sweep(self, now: float) -> int:
        dead = []
        for key, state in self._states.items():
            self._prune(state, now)
            if not state.failures and state.locked_until <= now:
                dead.append(key)
        for key in dead:
            del self._states[key]
        if dead:
            gone = set(dead)
            for user_index in list(self._index):
                keys = self._index[user_index] - gone
                if keys:
                    self._index[user_index] = keys
                else:
                    del self._index[user_index]
        self._last_sweep = now
        return len(dead)


# ─────────────────────────────────────────────────────────────
# Redis
# ─────────────────────────────────────────────────────────────
# Atomic sliding-window failure record + lockout start (ZSET).
LOCKOUT_FAILURE_LUA = """
-- passkeys:lockout-failure
-- KEYS[1] = failures zset
-- KEYS[2] = seq key
-- KEYS[3] = lock key
-- KEYS[4] = per-username index set
-- ARGV[1] = now_ms
-- ARGV[2] = window_ms
-- ARGV[3] = threshold
-- ARGV[4] = lock_ms
-- ARGV[5] = key id (index member)
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local lock_ms = tonumber(ARGV[4])
redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now - window)
local seq = redis.call('INCR', KEYS[2])
redis.call('ZADD', KEYS[1], now, now .. '-' .. seq)
redis.call('PEXPIRE', KEYS[1], window)
redis.call('PEXPIRE', KEYS[2], window)
redis.call('SADD', KEYS[4], ARGV[5])
redis.call('PEXPIRE', KEYS[4], math.max(window, lock_ms))
local count = redis.call('ZCARD', KEYS[1])
local started = 0
if count >= tonumber(ARGV[3]) then
  if redis.call('EXISTS', KEYS[3]) == 0 then
    started = 1
  end
  redis.call('SET', KEYS[3], now + lock_ms, 'PX', lock_ms)
end
return {count, started}
"""


class RedisLockoutGuard(LockoutGuardProtocol):
    def __init__(
        self,
        policy: RelyingPartyPolicy,
        redis: RedisClient,
        *,
        store_timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy
        self._redis = redis
        self._timeout = float(store_timeout)
        self._clock = clock

    def _keys(self, key: str) -> tuple[str, str, str]:
        return (
            self._redis.key("lockout", key, "failures"),
            self._redis.key("lockout", key, "seq"),
            self._redis.key("lockout", key, "lock"),
        )

    def _index_key(self, username: Optional[str]) -> str:
        return self._redis.key("lockout", "idx", _username_index(username))

    async def check_lockout(self, username: Optional[str], client_id: Optional[str]) -> None:
        _, _, lock_key = self._keys(lockout_key(username, client_id))
        raw = await self._redis.bounded("lockout.check", lambda c: c.get(lock_key), timeout=self._timeout)
        if raw is None:
            return
        now_ms = int(self._clock() * 1000)
        try:
            locked_until_ms = int(float(raw))
        except (TypeError, ValueError):
            locked_until_ms = now_ms + self.policy.lockout_duration_seconds * 1000
        if locked_until_ms > now_ms:
            raise LockedOutError(message="lockout active", retry_after=max(1, math.ceil((locked_until_ms - now_ms) / 1000)))

    async def record_failure(self, username: Optional[str], client_id: Optional[str]) -> int:
        key = lockout_key(username, client_id)
        failures, seq, lock = self._keys(key)
        args = [
            int(self._clock() * 1000),
            self.policy.rate_limit_window_seconds * 1000,
            self.policy.lockout_threshold,
            self.policy.lockout_duration_seconds * 1000,
            key,
        ]
        result = await self._redis.bounded(
            "lockout.record_failure",
            lambda c: self._redis.run_script(
                LOCKOUT_FAILURE_LUA, keys=[failures, seq, lock, self._index_key(username)], args=args
            ),
            timeout=self._timeout,
        )
        count, started = int(result[0]), int(result[1])
        if started:
            _audit_lockout(self.policy, username, client_id, count)
        return count

    async def record_success(self, username: Optional[str], client_id: Optional[str]) -> None:
        keys = self._keys(lockout_key(username, client_id))
        await self._redis.bounded("lockout.record_success", lambda c: c.delete(*keys), timeout=self._timeout)

    async def reset_lockout(self, username: str) -> int:
        index_key = self._index_key(username)
        members = await self._redis.bounded("lockout.reset", lambda c: c.smembers(index_key), timeout=self._timeout)
        members = [m.decode() if isinstance(m, (bytes, bytearray)) else m for m in (members or [])]
        doomed = [k for m in members for k in self._keys(m)] + [index_key]
        await self._redis.bounded("lockout.reset", lambda c: c.delete(*doomed), timeout=self._timeout)
        return len(members)


__all__ = [
    "LockoutGuardProtocol",
    "MemoryLockoutGuard",
    "RedisLockoutGuard",
    "LOCKOUT_FAILURE_LUA",
    "lockout_key",
]
