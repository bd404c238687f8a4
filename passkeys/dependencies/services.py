# passkeys/dependencies/services.py
from __future__ import annotations

"""
Passkeys - Service Container
============================

Everything the HTTP layer needs, wired once by the application factory and
kept on `app.state.passkeys`:

- the base `RelyingPartyPolicy` (request-derived RP id/origin are filled
  per request by `policy_for()`),
- the challenge store, credential repository, lockout guard and user
  directory,
- the host's extra authentication backends (password check, ...).

Ceremony engines are cheap and built per request with the effective policy.
Tests build a container directly with memory backends and hand it to
`create_app(services=...)`.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from fastapi import Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from passkeys.core.config import Settings
from passkeys.core.policy import RelyingPartyPolicy
from passkeys.core.redis_client import RedisClient
from passkeys.db.session import build_async_engine, build_session_maker, db_healthcheck
from passkeys.repositories.credential import (
    CredentialRepositoryProtocol,
    MemoryCredentialRepository,
    SqlCredentialRepository,
)
from passkeys.repositories.user import UserDirectoryProtocol, get_user_directory
from passkeys.services.assertion import AssertionCeremony
from passkeys.services.auth_chain import AuthBackend, AuthenticationChain, PasskeyAuthBackend
from passkeys.services.challenge_store import (
    ChallengeStoreProtocol,
    MemoryChallengeStore,
    RedisChallengeStore,
)
from passkeys.services.lockout import LockoutGuardProtocol, MemoryLockoutGuard, RedisLockoutGuard
from passkeys.services.registration import RegistrationCeremony


@dataclass
class PasskeyServices:
    policy: RelyingPartyPolicy
    challenges: ChallengeStoreProtocol
    credentials: CredentialRepositoryProtocol
    lockout: LockoutGuardProtocol
    users: UserDirectoryProtocol
    extra_backends: List[AuthBackend] = field(default_factory=list)
    failure_jitter: Tuple[float, float] = (0.05, 0.15)
    redis: Optional[RedisClient] = None
    engine: Optional[AsyncEngine] = None

    # ── per-request wiring ───────────────────────────────────
    def policy_for(self, request: Request) -> RelyingPartyPolicy:
        url = request.url
        return self.policy.for_request(url.hostname or "localhost", url.scheme, url.port)

    def registration(self, policy: RelyingPartyPolicy) -> RegistrationCeremony:
        return RegistrationCeremony(policy, self.challenges, self.credentials)

    def assertion(self, policy: RelyingPartyPolicy) -> AssertionCeremony:
        return AssertionCeremony(policy, self.challenges, self.credentials, self.users)

    def auth_chain(self, policy: RelyingPartyPolicy) -> AuthenticationChain:
        passkey = PasskeyAuthBackend(policy, self.assertion(policy), self.lockout, self.users)
        return AuthenticationChain([passkey, *self.extra_backends])

    async def failure_delay(self) -> None:
        """Random delay on failure paths so timing does not reveal which check failed."""
        lo, hi = self.failure_jitter
        if hi > 0:
            await asyncio.sleep(random.uniform(lo, hi))

    # ── lifecycle ────────────────────────────────────────────
    async def startup(self) -> None:
        """Connect Redis. A failure leaves the stores answering 503 until it recovers."""
        if self.redis is None:
            return
        try:
            await self.redis.connect()
        except RuntimeError:
            logger.exception("Redis connect failed (continuing in degraded mode)")

    async def readiness(self) -> Dict[str, bool]:
        checks: Dict[str, bool] = {}
        if self.redis is not None:
            checks["redis"] = await self.redis.is_connected()
            if not checks["redis"]:
                try:
                    await self.redis.connect()
                    checks["redis"] = await self.redis.is_connected()
                except RuntimeError:
                    checks["redis"] = False
        if self.engine is not None:
            checks["db"] = await db_healthcheck(self.engine)
        return checks

    async def shutdown(self) -> None:
        if self.redis is not None:
            await self.redis.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(settings: Settings) -> PasskeyServices:
    """Select backends from settings. Redis/DB connections open at startup."""
    policy = RelyingPartyPolicy.from_settings(settings)
    timeout = settings.STORE_TIMEOUT_SECONDS

    redis: Optional[RedisClient] = None
    if "redis" in (settings.CHALLENGE_STORE_BACKEND, settings.LOCKOUT_STORE_BACKEND):
        redis = RedisClient(settings.REDIS_URL, key_prefix=settings.REDIS_KEY_PREFIX)

    if settings.CHALLENGE_STORE_BACKEND == "redis":
        challenges: ChallengeStoreProtocol = RedisChallengeStore(
            redis, policy.challenge_ttl_seconds, store_timeout=timeout
        )
    else:
        challenges = MemoryChallengeStore(policy.challenge_ttl_seconds)

    if settings.LOCKOUT_STORE_BACKEND == "redis":
        lockout: LockoutGuardProtocol = RedisLockoutGuard(policy, redis, store_timeout=timeout)
    else:
        lockout = MemoryLockoutGuard(policy)

    engine: Optional[AsyncEngine] = None
    if settings.CREDENTIAL_REPOSITORY_BACKEND == "sql":
        engine = build_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        credentials: CredentialRepositoryProtocol = SqlCredentialRepository(build_session_maker(engine))
    else:
        credentials = MemoryCredentialRepository()

    return PasskeyServices(
        policy=policy,
        challenges=challenges,
        credentials=credentials,
        lockout=lockout,
        users=get_user_directory(settings.USER_DIRECTORY_IMPL),
        failure_jitter=settings.failure_jitter_seconds,
        redis=redis,
        engine=engine,
    )


__all__ = ["PasskeyServices", "build_services"]
