# tests/fixtures/app.py

"""
🧩 App Fixtures:
- Relying-party policy pinned to https://localhost
- Memory-backed stores driven by a controllable clock
- `PasskeyServices` container + FastAPI app built by `create_app`
- HTTP client for integration tests; the host user is picked per request
  with the `X-Test-User` header (see `as_user`)
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import pytest
from fastapi import FastAPI, HTTPException, Request, status
from httpx import ASGITransport, AsyncClient

from passkeys.core.config import Settings
from passkeys.core.policy import RelyingPartyPolicy
from passkeys.dependencies.auth import get_current_user
from passkeys.dependencies.services import PasskeyServices
from passkeys.domain import Credential, UserRecord
from passkeys.main import create_app
from passkeys.repositories.credential import MemoryCredentialRepository
from passkeys.repositories.user import MemoryUserDirectory
from passkeys.services.challenge_store import MemoryChallengeStore
from passkeys.services.lockout import MemoryLockoutGuard
from tests.utils.authenticator import SoftwareAuthenticator

RP_ID = "localhost"
ORIGIN = "https://localhost"
TEST_USER_HEADER = "X-Test-User"


# ──────────────────────────────────────────────────────────────
# ⏱ Clock
# ──────────────────────────────────────────────────────────────
@dataclass
class FakeClock:
    now: float = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ──────────────────────────────────────────────────────────────
# 📜 Policy & stores
# ──────────────────────────────────────────────────────────────
def make_policy(**overrides: Any) -> RelyingPartyPolicy:
    values: Dict[str, Any] = dict(
        rp_id=RP_ID,
        rp_name="Passkeys Test",
        origin=ORIGIN,
        challenge_ttl_seconds=120,
        user_verification="required",
        lockout_threshold=3,
        lockout_duration_seconds=900,
        rate_limit_max_attempts=10,
        rate_limit_window_seconds=300,
        allowed_algorithms=("ES256",),
        user_handle_secret=b"test-user-handle-secret",
        hash_usernames=True,
    )
    values.update(overrides)
    return RelyingPartyPolicy(**values)


@pytest.fixture()
def policy() -> RelyingPartyPolicy:
    return make_policy()


@pytest.fixture()
def challenge_store(policy: RelyingPartyPolicy, clock: FakeClock) -> MemoryChallengeStore:
    return MemoryChallengeStore(policy.challenge_ttl_seconds, clock=clock)


@pytest.fixture()
def credential_repo() -> MemoryCredentialRepository:
    return MemoryCredentialRepository()


@pytest.fixture()
def lockout_guard(policy: RelyingPartyPolicy, clock: FakeClock) -> MemoryLockoutGuard:
    return MemoryLockoutGuard(policy, clock=clock)


@pytest.fixture()
def services(
    policy: RelyingPartyPolicy,
    challenge_store: MemoryChallengeStore,
    credential_repo: MemoryCredentialRepository,
    lockout_guard: MemoryLockoutGuard,
    user_directory: MemoryUserDirectory,
) -> PasskeyServices:
    return PasskeyServices(
        policy=policy,
        challenges=challenge_store,
        credentials=credential_repo,
        lockout=lockout_guard,
        users=user_directory,
        failure_jitter=(0.0, 0.0),
    )


@pytest.fixture()
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator(origin=ORIGIN)


# ──────────────────────────────────────────────────────────────
# 🔑 Enrollment helper (straight through the ceremony engine)
# ──────────────────────────────────────────────────────────────
@pytest.fixture()
def enroll(services: PasskeyServices) -> Callable[..., Awaitable[Credential]]:
    """
    `await enroll(user, authenticator, label="Laptop", **create_kwargs)`
    registers one passkey and returns the stored `Credential`.
    """
    async def _enroll(
        user: UserRecord,
        device: SoftwareAuthenticator,
        *,
        label: Optional[str] = None,
        **create_kwargs: Any,
    ) -> Credential:
        ceremony = services.registration(services.policy)
        options = await ceremony.begin_registration(user)
        response = device.create(options.public_key, **create_kwargs)
        return await ceremony.complete_registration(response, options.challenge_token, user, label=label)

    return _enroll


# ──────────────────────────────────────────────────────────────
# 🌐 App + HTTP client
# ──────────────────────────────────────────────────────────────
def as_user(user: UserRecord) -> Dict[str, str]:
    return {TEST_USER_HEADER: str(user.user_ref)}


async def _user_from_header(request: Request) -> UserRecord:
    ref = request.headers.get(TEST_USER_HEADER)
    user = None
    if ref and ref.lstrip("-").isdigit():
        user = await request.app.state.passkeys.users.get_by_ref(int(ref))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        PASSKEY_RP_ID=RP_ID,
        PASSKEY_ORIGIN=ORIGIN,
        PASSKEY_FAILURE_JITTER_MS="0,0",
        ENABLE_DOCS=False,
    )


@pytest.fixture()
def app(test_settings: Settings, services: PasskeyServices) -> FastAPI:
    """
    🧪 The production app factory with memory backends and a header-driven
    current user.
    """
    application = create_app(test_settings, services)
    application.dependency_overrides[get_current_user] = _user_from_header
    return application


@pytest.fixture()
async def async_client(app: FastAPI):
    async with AsyncClient(transport=ASGITransport(app=app), base_url=ORIGIN) as client:
        yield client


__all__ = [
    "RP_ID",
    "ORIGIN",
    "FakeClock",
    "make_policy",
    "as_user",
    "clock",
    "policy",
    "challenge_store",
    "credential_repo",
    "lockout_guard",
    "services",
    "authenticator",
    "enroll",
    "test_settings",
    "app",
    "async_client",
]
