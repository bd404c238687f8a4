# passkeys/core/redis_client.py
from __future__ import annotations

"""
Passkeys - Redis Client (Async)
===============================
Connection manager for the Redis-backed challenge store and lockout guard.

What this provides
------------------
• Resilient connect with retries & backoff
• Pooled async client with health checks
• `run_script()` - EVALSHA with EVAL fallback (scripts are loaded lazily)
• `key()` - namespacing helper (`<prefix>:<part>:<part>`)

Public API
----------
- rc = RedisClient(url, key_prefix="passkeys")
- await rc.connect() / await rc.close() / await rc.is_connected()
- rc.client
- await rc.run_script(script, keys=[...], args=[...])
- await rc.bounded("op", lambda c: c.get(key), timeout=2.0)

Design notes
------------
• Services never swallow Redis failures; they translate them into
  `InfrastructureError` so that a flaky store reads as "retry later",
  never as "credential invalid".
• Tests swap the low-level client for an in-memory mock by assigning
  `rc._client`.
"""

import asyncio
import os
import random
from typing import Any, Dict, Optional, Protocol, Sequence
from urllib.parse import urlparse

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import NoScriptError, RedisError

from passkeys.core.exceptions import InfrastructureError

# ─────────────────────────────────────────────────────────────────────────────
# Tunables (env-aware sensible defaults)
# ─────────────────────────────────────────────────────────────────────────────
MAX_RETRIES = int(os.getenv("REDIS_CONNECT_MAX_RETRIES", "5"))
BASE_DELAY = float(os.getenv("REDIS_CONNECT_BASE_DELAY", "0.3"))  # seconds
HEALTH_CHECK_INTERVAL = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))  # seconds
SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "3"))
SOCKET_CONNECT_TIMEOUT = float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "3"))
POOL_MAX_CONNECTIONS = int(os.getenv("REDIS_POOL_MAX_CONNECTIONS", "64"))
CLIENT_NAME = os.getenv("REDIS_CLIENT_NAME", "passkeys-rp")


# ─────────────────────────────────────────────────────────────────────────────
# Minimal protocol the real client and the test mock satisfy (typing only)
# ─────────────────────────────────────────────────────────────────────────────
class _RedisProto(Protocol):
    async def ping(self) -> Any: ...
    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any: ...
    async def set(self, name: str, value: Any, *, ex: Optional[int] = None, px: Optional[int] = None, nx: Optional[bool] = None) -> Any: ...
    async def get(self, name: str) -> Any: ...
    async def getdel(self, name: str) -> Any: ...
    async def exists(self, *names: Any) -> Any: ...
    async def delete(self, *names: Any) -> Any: ...
    async def close(self) -> Any: ...


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────
class RedisClient:
    """
    Redis connection manager (asyncio).

    Features
    --------
    • Resilient connect with exponential backoff + jitter
    • Pooled connections, health checks
    • Script runner with SHA cache
    """

    def __init__(self, redis_url: str, *, key_prefix: str = "passkeys"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix.strip(":")
        self._client: Optional[_RedisProto] = None
        self._script_shas: Dict[str, str] = {}

    # ── lifecycle ────────────────────────────────────────────────────────────
    async def connect(self) -> None:
        """
        Establish a connection with retries.

        Steps
        -----
        - **[Step 1]** Reuse a healthy client when possible.
        - **[Step 2]** Attempt connection with backoff and jitter.
        """
        # ── [Step 1] Reuse an existing healthy client ───────────────────────
        if self._client:
            try:
                await self._client.ping()
                logger.debug("Redis already connected.")
                return
            except RedisError:
                self._client = None  # stale client → reconnect

        attempt = 0
        last_err: Optional[Exception] = None

        # ── [Step 2] Retry with backoff ─────────────────────────────────────
        while attempt < MAX_RETRIES:
            attempt += 1
            try:
                self._client = self._build_client()
                await self._client.ping()
                logger.info("✅ Connected to Redis")
                return
            except (RedisError, OSError) as e:
                last_err = e
                delay = self._backoff(attempt)
                logger.warning(
                    "Redis connect attempt {}/{} failed: {} (retrying in {:.2f}s)",
                    attempt, MAX_RETRIES, repr(e), delay,
                )
                await asyncio.sleep(delay)

        logger.error("❌ Redis connection failed after {} retries.", MAX_RETRIES)
        raise RuntimeError("Redis connection failed") from last_err

    async def close(self) -> None:
        """Gracefully close connection & pool."""
        if not self._client:
            return
        try:
            await self._client.close()
            logger.info("🛑 Redis connection closed.")
        except RedisError as e:
            logger.warning("Error closing Redis connection: {}", e)
        finally:
            self._client = None
            self._script_shas.clear()

    async def is_connected(self) -> bool:
        """Return True if `PING` succeeds (healthy connection)."""
        if not self._client:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    @property
    def client(self) -> _RedisProto:
        """Low-level client; ensure `connect()` was called at startup."""
        if not self._client:
            raise RuntimeError("Redis client not initialized. Call connect() first.")
        return self._client

    # ── helpers ─────────────────────────────────────────────────────────────
    def key(self, *parts: str) -> str:
        """Namespaced key: `key("challenge", token)` → `passkeys:challenge:<token>`."""
        return ":".join([self.key_prefix, *parts]) if self.key_prefix else ":".join(parts)

    async def run_script(self, script: str, *, keys: Sequence[str], args: Sequence[Any] = ()) -> Any:
        """
        Run a Lua script atomically.

        Uses EVALSHA when the client can load scripts, re-loading once on
        `NOSCRIPT`; clients without `script_load` (test mocks) go straight to
        EVAL.
        """
        rc = self.client
        if not hasattr(rc, "script_load") or not hasattr(rc, "evalsha"):
            return await rc.eval(script, len(keys), *keys, *args)

        sha = self._script_shas.get(script)
        if sha is None:
            sha = await rc.script_load(script)  # type: ignore[attr-defined]
            self._script_shas[script] = sha
        try:
            return await rc.evalsha(sha, len(keys), *keys, *args)  # type: ignore[attr-defined]
        except NoScriptError:
            # server restarted / SCRIPT FLUSH
            self._script_shas.pop(script, None)
            sha = await rc.script_load(script)  # type: ignore[attr-defined]
            self._script_shas[script] = sha
            return await rc.evalsha(sha, len(keys), *keys, *args)  # type: ignore[attr-defined]

    async def bounded(self, op: str, fn, *, timeout: float) -> Any:
        """
        Run `fn(client)` under `asyncio.wait_for(timeout)`.

        A missing connection, a timeout or any `RedisError` becomes
        `InfrastructureError`; the caller never sees a raw Redis fault.
        """
        try:
            rc = self.client
        except RuntimeError as exc:
            raise InfrastructureError(message=f"redis not connected ({op})") from exc
        try:
            return await asyncio.wait_for(fn(rc), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Redis {} timed out after {:.2f}s", op, timeout)
            raise InfrastructureError(message=f"redis {op} timed out") from exc
        except (RedisError, OSError) as exc:
            logger.warning("Redis {} failed: {!r}", op, exc)
            raise InfrastructureError(message=f"redis {op} failed") from exc

    # ── internals ───────────────────────────────────────────────────────────
    def _build_client(self) -> _RedisProto:
        """Instantiate a Redis client with sane pool options from URL."""
        url = self.redis_url.strip()
        parsed = urlparse(url)
        client_kwargs = dict(
            decode_responses=True,
            health_check_interval=HEALTH_CHECK_INTERVAL,
            socket_keepalive=True,
            socket_timeout=SOCKET_TIMEOUT,
            socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
            retry_on_timeout=True,
            max_connections=POOL_MAX_CONNECTIONS,
            client_name=CLIENT_NAME,
        )

        # TLS handling for rediss://
        if parsed.scheme.startswith("rediss"):
            cert_reqs = os.getenv("REDIS_SSL_CERT_REQS", "required").lower()
            if cert_reqs == "none":  # dev only
                client_kwargs["ssl_cert_reqs"] = None  # type: ignore

        return redis.Redis.from_url(url, **client_kwargs)

    @staticmethod
    def _backoff(attempt: int) -> float:
        # Exponential backoff with jitter (cap at 3s)
        return min(3.0, BASE_DELAY * (2 ** (attempt - 1))) + random.uniform(0, 0.25)


__all__ = ["RedisClient"]
