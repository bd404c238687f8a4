# passkeys/services/auth_chain.py
from __future__ import annotations

"""
Authentication Chain
====================

Plugs passkey login into a host's ordered list of authentication backends.

A login attempt carries a username, a secret field and the client id. The
secret field holds either a password or a passkey payload packed as JSON:

    {"_type": "passkey", "assertion": {...}, "challengeToken": "..."}

Backends are tried by descending `priority`. A backend either *matches* the
attempt and returns the final verdict, or passes with `CONTINUE`:

- `PasskeyAuthBackend` (80) matches passkey payloads. It also matches
  password attempts while password login is disabled and answers them
  with the same `FAILED` verdict a wrong password would get.
- `PasswordBackend` (50) is the host's password check.

`AuthVerdict.error_kind` is for logging and the HTTP mapping only. Clients
see the generic failure except for `LockedOut` and infrastructure trouble.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger

from passkeys.core.exceptions import CredentialError, ErrorKind, LockedOutError, PasskeyError
from passkeys.core.policy import RelyingPartyPolicy
from passkeys.repositories.user import UserDirectoryProtocol
from passkeys.services.assertion import UNKNOWN_USER_REF, AssertionCeremony, normalize_username
from passkeys.services.audit_log_service import AuditEvent, log_audit_event
from passkeys.services.lockout import LockoutGuardProtocol

PASSKEY_PAYLOAD_TYPE = "passkey"


# ─────────────────────────────────────────────────────────────
# Attempt / verdict
# ─────────────────────────────────────────────────────────────
class AuthOutcome(str, Enum):
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"
    CONTINUE = "CONTINUE"
    UNAVAILABLE = "UNAVAILABLE"  # store/network fault, retry later


@dataclass(frozen=True)
class PasskeyPayload:
    assertion: Mapping[str, Any]
    challenge_token: str


@dataclass(frozen=True)
class LoginAttempt:
    username: Optional[str]
    password_or_payload: Union[str, Mapping[str, Any], None]
    client_id: Optional[str] = None

    def passkey_payload(self) -> Optional[PasskeyPayload]:
        """Decode the passkey payload, or None for anything else (password, junk)."""
        raw = self.password_or_payload
        if isinstance(raw, str):
            if not raw.startswith("{"):
                return None
            try:
                raw = json.loads(raw)
            except ValueError:
                return None
        if not isinstance(raw, Mapping) or raw.get("_type") != PASSKEY_PAYLOAD_TYPE:
            return None
        assertion = raw.get("assertion")
        token = raw.get("challengeToken")
        if not isinstance(assertion, Mapping) or not isinstance(token, str) or not token:
            logger.warning("[Passkeys] passkey payload has invalid structure")
            return None
        return PasskeyPayload(assertion=assertion, challenge_token=token)


@dataclass(frozen=True)
class AuthVerdict:
    outcome: AuthOutcome
    user_ref: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    retry_after: Optional[int] = None

    @property
    def authenticated(self) -> bool:
        return self.outcome is AuthOutcome.AUTHENTICATED

    @classmethod
    def failed(cls, kind: Optional[ErrorKind] = None, *, retry_after: Optional[int] = None) -> "AuthVerdict":
        return cls(AuthOutcome.FAILED, error_kind=kind, retry_after=retry_after)


CONTINUE = AuthVerdict(AuthOutcome.CONTINUE)


# ─────────────────────────────────────────────────────────────
# Backends
# ─────────────────────────────────────────────────────────────
class AuthBackend:
    priority: int = 0

    async def authenticate(self, attempt: LoginAttempt) -> Tuple[bool, AuthVerdict]:
        raise NotImplementedError


class PasswordBackend(AuthBackend):
    """Host password check. Subclasses implement `verify_password`."""

    priority = 50

    async def verify_password(self, username: str, password: str) -> Optional[int]:
        """Return the user_ref for valid credentials, else None."""
        raise NotImplementedError

    async def authenticate(self, attempt: LoginAttempt) -> Tuple[bool, AuthVerdict]:
        if not isinstance(attempt.password_or_payload, str) or not attempt.username:
            return False, CONTINUE
        user_ref = await self.verify_password(attempt.username, attempt.password_or_payload)
        if user_ref is None:
            return True, AuthVerdict.failed()
        return True, AuthVerdict(AuthOutcome.AUTHENTICATED, user_ref=user_ref)


class PasskeyAuthBackend(AuthBackend):
    priority = 80

    def __init__(
        self,
        policy: RelyingPartyPolicy,
        assertion: AssertionCeremony,
        lockout: LockoutGuardProtocol,
        users: UserDirectoryProtocol,
    ) -> None:
        self.policy = policy
        self.assertion = assertion
        self.lockout = lockout
        self.users = users

    async def authenticate(self, attempt: LoginAttempt) -> Tuple[bool, AuthVerdict]:
        payload = attempt.passkey_payload()
        if payload is None:
            return await self._non_passkey(attempt)
        return True, await self._passkey(attempt, payload)

    # ── password attempts ────────────────────────────────────
    async def _non_passkey(self, attempt: LoginAttempt) -> Tuple[bool, AuthVerdict]:
        blocked = self.policy.disable_password_login
        if not blocked and attempt.username:
            user = await self.users.lookup_by_username(attempt.username)
            blocked = user is not None and not user.password_login_enabled
        if not blocked:
            return False, CONTINUE

        logger.warning("[Passkeys] password login disabled, blocking non-passkey attempt")
        log_audit_event(
            AuditEvent.PASSWORD_LOGIN_BLOCKED,
            status="BLOCKED",
            username=normalize_username(attempt.username) or "",
            client_id=attempt.client_id,
            hash_usernames=self.policy.hash_usernames,
        )
        return True, AuthVerdict.failed()

    # ── passkey attempts ─────────────────────────────────────
    async def _passkey(self, attempt: LoginAttempt, payload: PasskeyPayload) -> AuthVerdict:
        """
        Steps
        -----
        - **[Step 1]** Lockout check before any verification work.
        - **[Step 2]** Resolve the expected owner (username or discoverable).
        - **[Step 3]** Verify the assertion.
        - **[Step 4]** Record success or failure and audit.
        """
        username = normalize_username(attempt.username)
        client_id = attempt.client_id

        # ── [Step 1] Lockout ─────────────────────────────────
        try:
            await self.lockout.check_lockout(username, client_id)
        except LockedOutError as exc:
            self._audit_failure(username, client_id, exc)
            return AuthVerdict.failed(exc.kind, retry_after=exc.retry_after)
        except PasskeyError as exc:
            return self._unavailable(exc)

        try:
            # ── [Step 2] Expected owner ──────────────────────
            expected_ref: Optional[int] = None
            if username is not None:
                user = await self.users.lookup_by_username(username)
                expected_ref = user.user_ref if user is not None else UNKNOWN_USER_REF
            elif not self.policy.discoverable_login:
                raise CredentialError(ErrorKind.CREDENTIAL_UNKNOWN, "discoverable login disabled")

            # ── [Step 3] Verify ──────────────────────────────
            verified = await self.assertion.complete_assertion(
                payload.assertion, payload.challenge_token, expected_ref
            )
        except PasskeyError as exc:
            if exc.is_infrastructure:
                return self._unavailable(exc)
            return await self._record_failure(username, client_id, exc)

        # ── [Step 4] Success ─────────────────────────────────
        try:
            await self.lockout.record_success(username, client_id)
        except PasskeyError as exc:
            # verdict stands; a stale failure window only delays a later lockout
            logger.warning("[Passkeys] could not clear failures after login | kind={}", exc.kind.value)

        logger.info("[Passkeys] passkey login succeeded | user_ref={} uid={}", verified.user_ref, verified.credential.uid)
        log_audit_event(
            AuditEvent.PASSKEY_LOGIN_SUCCEEDED,
            username=username,
            user_ref=verified.user_ref,
            client_id=client_id,
            meta_data={"uid": verified.credential.uid, "user_verified": verified.user_verified},
            hash_usernames=self.policy.hash_usernames,
        )
        return AuthVerdict(AuthOutcome.AUTHENTICATED, user_ref=verified.user_ref)

    async def _record_failure(self, username: Optional[str], client_id: Optional[str], exc: PasskeyError) -> AuthVerdict:
        try:
            failures = await self.lockout.record_failure(username, client_id)
        except PasskeyError as store_exc:
            self._audit_failure(username, client_id, exc)
            return self._unavailable(store_exc)
        logger.info("[Passkeys] passkey login failed | kind={} failures={}", exc.kind.value, failures)
        self._audit_failure(username, client_id, exc, failures=failures)
        return AuthVerdict.failed(exc.kind)

    def _audit_failure(
        self,
        username: Optional[str],
        client_id: Optional[str],
        exc: PasskeyError,
        *,
        failures: Optional[int] = None,
    ) -> None:
        meta = {"kind": exc.kind.value}
        if failures is not None:
            meta["failures"] = failures
        log_audit_event(
            AuditEvent.PASSKEY_LOGIN_FAILED,
            status="FAILURE",
            username=username or "",
            client_id=client_id,
            meta_data=meta,
            hash_usernames=self.policy.hash_usernames,
        )

    @staticmethod
    def _unavailable(exc: PasskeyError) -> AuthVerdict:
        logger.warning("[Passkeys] login unavailable | {}", exc.message)
        return AuthVerdict(AuthOutcome.UNAVAILABLE, error_kind=ErrorKind.INFRASTRUCTURE_ERROR)


# ─────────────────────────────────────────────────────────────
# Chain
# ─────────────────────────────────────────────────────────────
class AuthenticationChain:
    def __init__(self, backends: Iterable[AuthBackend]) -> None:
        self.backends: List[AuthBackend] = sorted(backends, key=lambda b: b.priority, reverse=True)

    async def authenticate(self, attempt: LoginAttempt) -> AuthVerdict:
        for backend in self.backends:
            matched, verdict = await backend.authenticate(attempt)
            if matched:
                return verdict
        return AuthVerdict.failed()


__all__ = [
    "PASSKEY_PAYLOAD_TYPE",
    "AuthOutcome",
    "AuthVerdict",
    "AuthBackend",
    "AuthenticationChain",
    "LoginAttempt",
    "PasskeyAuthBackend",
    "PasskeyPayload",
    "PasswordBackend",
]
