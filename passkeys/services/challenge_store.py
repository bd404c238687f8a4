# passkeys/services/challenge_store.py
from __future__ import annotations

"""
Challenge Store
===============

Issues single-use ceremony challenges and consumes them atomically.

Each issue produces two independent random values:

- the **challenge** (32 bytes) that goes into the WebAuthn options and comes
  back signed inside `clientDataJSON`;
- the **token** (`secrets.token_urlsafe(32)`), an opaque handle the caller
  sends back with the verify request.

`consume(token)` is a test-and-delete: two concurrent verify calls with the
same token can never both succeed. An entry past its TTL is deleted and
reported as `ChallengeExpired`, unknown or reused tokens as
`ChallengeInvalid`.

Backends
--------
- `MemoryChallengeStore`: dict + `threading.Lock`, lazy sweep on issue.
- `RedisChallengeStore`: `SET EX` + `GETDEL`; every call is bounded by
  `store_timeout` and faults become `InfrastructureError`.
"""

import json
import re
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from passkeys.core.encoding import b64url, b64url_decode
from passkeys.core.exceptions import ChallengeError, ErrorKind
from passkeys.core.redis_client import RedisClient
from passkeys.domain import PURPOSE_ASSERTION, ConsumedChallenge, IssuedChallenge

CHALLENGE_BYTES = 32
TOKEN_BYTES = 32
# Redis keeps records a little past their TTL so an expired token is still
# recognisable as expired rather than unknown.
EXPIRED_GRACE_SECONDS = 300

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


def _new_pair() -> tuple[bytes, str]:
    return secrets.token_bytes(CHALLENGE_BYTES), secrets.token_urlsafe(TOKEN_BYTES)


def _check_token_shape(token: Optional[str]) -> str:
    if not token or not _TOKEN_RE.match(token):
        raise ChallengeError(ErrorKind.CHALLENGE_INVALID, "malformed challenge token")
    return token


class ChallengeStoreProtocol:
    async def issue(self, bound_username: Optional[str], *, purpose: str = PURPOSE_ASSERTION) -> IssuedChallenge:
        raise NotImplementedError

    async def consume(self, token: str) -> ConsumedChallenge:
        raise NotImplementedError

    async def purge_expired(self) -> int:
        raise NotImplementedError


# ─────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class _Entry:
    challenge: bytes
    bound_username: Optional[str]
    purpose: str
    issued_at: float
    ttl: int

    def expired(self, now: float) -> bool:
        return now >= self.issued_at + self.ttl


class MemoryChallengeStore(ChallengeStoreProtocol):
    def __init__(self, ttl_seconds: int, *, clock: Callable[[], float] = time.time) -> None:
        self._ttl = int(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    async def issue(self, bound_username: Optional[str], *, purpose: str = PURPOSE_ASSERTION) -> IssuedChallenge:
        challenge, token = _new_pair()
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._entries[token] = _Entry(challenge, bound_username, purpose, now, self._ttl)
        return IssuedChallenge(challenge=challenge, token=token, purpose=purpose, expires_at=now + self._ttl)

    async def consume(self, token: str) -> ConsumedChallenge:
        _check_token_shape(token)
        now = self._clock()
        with self._lock:
            entry = self._entries.pop(token, None)
        if entry is None:
            raise ChallengeError(ErrorKind.CHALLENGE_INVALID, "unknown or consumed challenge token")
        if entry.expired(now):
            raise ChallengeError(ErrorKind.CHALLENGE_EXPIRED, "challenge expired")
        return ConsumedChallenge(challenge=entry.challenge, bound_username=entry.bound_username, purpose=entry.purpose)

    async def purge_expired(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        stale = [t for t, e in self._entries.items() if e.expired(now)]
        for t in stale:
            del self._entries[t]
        return len(stale)

    @property
    def pending(self) -> int:
        return len(self._entries)


# ─────────────────────────────────────────────────────────────
# Redis
# ─────────────────────────────────────────────────────────────
class RedisChallengeStore(ChallengeStoreProtocol):
    def __init__(
        self,
        redis: RedisClient,
        ttl_seconds: int,
        *,
        store_timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._ttl = int(ttl_seconds)
        self._timeout = float(store_timeout)
        self._clock = clock

    def _key(self, token: str) -> str:
        return self._redis.key("challenge", token)

    async def issue(self, bound_username: Optional[str], *, purpose: str = PURPOSE_ASSERTION) -> IssuedChallenge:
        challenge, token = _new_pair()
        now = self._clock()
        record = json.dumps(
            {"c": b64url(challenge), "u": bound_username, "p": purpose, "iat": now, "ttl": self._ttl},
            separators=(",", ":"),
        )
        key = self._key(token)
        await self._redis.bounded(
            "challenge.issue",
            lambda c: c.set(key, record, ex=self._ttl + EXPIRED_GRACE_SECONDS),
            timeout=self._timeout,
        )
        return IssuedChallenge(challenge=challenge, token=token, purpose=purpose, expires_at=now + self._ttl)

    async def consume(self, token: str) -> ConsumedChallenge:
        _check_token_shape(token)
        key = self._key(token)
        raw = await self._redis.bounded("challenge.consume", lambda c: c.getdel(key), timeout=self._timeout)
        if raw is None:
            raise ChallengeError(ErrorKind.CHALLENGE_INVALID, "unknown or consumed challenge token")
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
            challenge = b64url_decode(data["c"])
            issued_at = float(data["iat"])
            ttl = int(data.get("ttl", self._ttl))
        except (ValueError, KeyError, TypeError) as exc:
            raise ChallengeError(ErrorKind.CHALLENGE_INVALID, "corrupt challenge record") from exc
        if self._clock() >= issued_at + ttl:
            raise ChallengeError(ErrorKind.CHALLENGE_EXPIRED, "challenge expired")
        return ConsumedChallenge(challenge=challenge, bound_username=data.get("u"), purpose=data.get("p") or PURPOSE_ASSERTION)

    async def purge_expired(self) -> int:
        # Redis evicts on EX; nothing to sweep.
        return 0


__all__ = [
    "ChallengeStoreProtocol",
    "MemoryChallengeStore",
    "RedisChallengeStore",
    "CHALLENGE_BYTES",
]
