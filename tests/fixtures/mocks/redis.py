from __future__ import annotations

"""
MockRedisClient (async) - test-grade, RedisClient-compatible
============================================================
Covers the subset of Redis the passkey stores use:

KV        : get/set(ex/px/nx/xx)/getdel/exists/delete/incr/expire/pexpire
Sets      : sadd/smembers
Sorted    : zadd/zremrangebyscore/zcard
Health    : ping/close/flushdb
Lua       : script_load()/evalsha()/eval() emulating the lockout failure
            script (recognised by its `-- passkeys:lockout-failure` marker)

Failure injection
-----------------
Set `client.broken = True` and every command raises
`redis.exceptions.ConnectionError`, which `RedisClient.bounded()` must turn
into `InfrastructureError`.

Design notes
------------
- Values are stored as text, like a client built with `decode_responses=True`.
- TTLs use wall-clock time; the stores compare their own clocks against the
  timestamps they write, so fake clocks in tests still behave.
"""

from typing import Any, Dict, List, Optional
import hashlib
import time

from redis.exceptions import ConnectionError as RedisConnectionError, NoScriptError

LOCKOUT_SCRIPT_MARKER = "-- passkeys:lockout-failure"


def _now() -> float:
    return time.time()


def _text(v: Any) -> str:
    if isinstance(v, (bytes, bytearray)):
        return v.decode("utf-8")
    return str(v)


class MockRedisClient:
    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.sets: Dict[str, set] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.expirations: Dict[str, float] = {}
        self._sha_to_script: Dict[str, str] = {}
        self.broken = False
        self.calls: List[str] = []
        self._closed = False

    # ── plumbing ──────────────────────────────────────────────
    def _guard(self, command: str) -> None:
        self.calls.append(command)
        if self.broken:
            raise RedisConnectionError("mock redis is down")

    def _purge_expired(self) -> None:
        now = _now()
        for key, exp in list(self.expirations.items()):
            if exp <= now:
                self._drop(key)

    def _drop(self, key: str) -> int:
        removed = 0
        for space in (self.store, self.sets, self.zsets):
            if key in space:
                del space[key]
                removed = 1
        self.expirations.pop(key, None)
        return removed

    def _exists(self, key: str) -> bool:
        return key in self.store or key in self.sets or key in self.zsets

    # ── housekeeping ──────────────────────────────────────────
    async def ping(self) -> bool:
        self._guard("PING")
        return True

    async def close(self) -> None:
        self._closed = True

    async def flushdb(self) -> None:
        self.store.clear()
        self.sets.clear()
        self.zsets.clear()
        self.expirations.clear()
        self._sha_to_script.clear()

    # ── strings ───────────────────────────────────────────────
    async def get(self, key: str) -> Optional[str]:
        self._guard("GET")
        self._purge_expired()
        return self.store.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
    ) -> Optional[bool]:
        self._guard("SET")
        self._purge_expired()
        exists = key in self.store
        if (nx and exists) or (xx and not exists):
            return None
        self.store[key] = _text(value)
        self.expirations.pop(key, None)
        if ex is not None:
            self.expirations[key] = _now() + int(ex)
        elif px is not None:
            self.expirations[key] = _now() + int(px) / 1000.0
        return True

    async def getdel(self, key: str) -> Optional[str]:
        self._guard("GETDEL")
        self._purge_expired()
        value = self.store.pop(key, None)
        self.expirations.pop(key, None)
        return value

    async def incr(self, key: str, amount: int = 1) -> int:
        self._guard("INCR")
        self._purge_expired()
        value = int(self.store.get(key, 0)) + int(amount)
        self.store[key] = str(value)
        return value

    async def exists(self, *keys: str) -> int:
        self._guard("EXISTS")
        self._purge_expired()
        return sum(1 for k in keys if self._exists(k))

    async def delete(self, *keys: str) -> int:
        self._guard("DEL")
        return sum(self._drop(k) for k in keys)

    async def expire(self, key: str, seconds: int) -> bool:
        return await self.pexpire(key, int(seconds) * 1000)

    async def pexpire(self, key: str, ms: int) -> bool:
        self._guard("PEXPIRE")
        if not self._exists(key):
            return False
        self.expirations[key] = _now() + int(ms) / 1000.0
        return True

    # ── sets ──────────────────────────────────────────────────
    async def sadd(self, key: str, *members: Any) -> int:
        self._guard("SADD")
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(_text(m) for m in members)
        return len(bucket) - before

    async def smembers(self, key: str) -> set:
        self._guard("SMEMBERS")
        self._purge_expired()
        return set(self.sets.get(key, set()))

    # ── sorted sets ───────────────────────────────────────────
    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        self._guard("ZADD")
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if _text(m) not in zset)
        for member, score in mapping.items():
            zset[_text(member)] = float(score)
        return added

    async def zremrangebyscore(self, key: str, lo: float, hi: float) -> int:
        self._guard("ZREMRANGEBYSCORE")
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if float(lo) <= s <= float(hi)]
        for m in doomed:
            del zset[m]
        return len(doomed)

    async def zcard(self, key: str) -> int:
        self._guard("ZCARD")
        self._purge_expired()
        return len(self.zsets.get(key, {}))

    # ── Lua ───────────────────────────────────────────────────
    async def script_load(self, script: str) -> str:
        self._guard("SCRIPT LOAD")
        sha = hashlib.sha1(script.encode("utf-8")).hexdigest()
        self._sha_to_script[sha] = script
        return sha

    async def evalsha(self, sha: str, numkeys: int, *keys_and_args: Any) -> Any:
        self._guard("EVALSHA")
        script = self._sha_to_script.get(sha)
        if script is None:
            raise NoScriptError("NOSCRIPT No matching script.")
        return await self._run(script, numkeys, keys_and_args)

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        self._guard("EVAL")
        return await self._run(script, numkeys, keys_and_args)

    async def _run(self, script: str, numkeys: int, keys_and_args) -> Any:
        keys = [_text(k) for k in keys_and_args[:numkeys]]
        args = list(keys_and_args[numkeys:])
        if LOCKOUT_SCRIPT_MARKER in script:
            return await self._lockout_failure(keys, args)
        raise NotImplementedError("MockRedisClient.eval: script pattern not supported")

    async def _lockout_failure(self, keys: List[str], args: List[Any]) -> List[int]:
        failures, seq_key, lock_key, index_key = keys
        now, window, threshold, lock_ms = (int(a) for a in args[:4])
        member = _text(args[4])

        await self.zremrangebyscore(failures, 0, now - window)
        seq = await self.incr(seq_key)
        await self.zadd(failures, {f"{now}-{seq}": now})
        await self.pexpire(failures, window)
        await self.pexpire(seq_key, window)
        await self.sadd(index_key, member)
        await self.pexpire(index_key, max(window, lock_ms))
        count = await self.zcard(failures)
        started = 0
        if count >= threshold:
            if not await self.exists(lock_key):
                started = 1
            await self.set(lock_key, now + lock_ms, px=lock_ms)
        return [count, started]


__all__ = ["MockRedisClient", "LOCKOUT_SCRIPT_MARKER"]
