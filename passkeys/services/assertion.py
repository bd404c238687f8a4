# passkeys/services/assertion.py
from __future__ import annotations

"""
Assertion Ceremony
==================

Login with a registered passkey.

- `begin_assertion(username)` issues an assertion challenge bound to the
  (normalized) username and lists the user's active credentials. Without a
  username the options carry no `allowCredentials` and the authenticator
  picks a discoverable credential.
- `complete_assertion(...)` consumes the challenge, resolves the
  credential, checks client data, authenticator data and the signature,
  enforces the signature counter rule and records the use.

Unknown users and users without credentials are indistinguishable: both go
through the same repository query and raise `NoCredentials`.

Counter rule
------------
If the stored or the presented counter is non-zero, the presented counter
must be strictly greater than the stored one. Otherwise the credential is
flagged for review, `CLONE_SUSPECTED` is audited and the assertion fails
with `CounterRegression`; the stored counter is left unchanged. Two zero
counters (authenticators without a counter) skip the check.
"""

import hmac
from dataclasses import replace
from typing import Any, Mapping, Optional

from loguru import logger

from passkeys.core.encoding import b64url, b64url_decode
from passkeys.core.exceptions import ChallengeError, CredentialError, ErrorKind, VerificationError
from passkeys.core.policy import RelyingPartyPolicy
from passkeys.domain import PURPOSE_ASSERTION, AssertionOptions, Credential, VerifiedAssertion, utcnow
from passkeys.repositories.credential import CredentialRepositoryProtocol
from passkeys.repositories.user import UserDirectoryProtocol
from passkeys.services import webauthn_service as wa
from passkeys.services.audit_log_service import AuditEvent, log_audit_event
from passkeys.services.challenge_store import ChallengeStoreProtocol
from passkeys.services.registration import CEREMONY_TIMEOUT_MS

# user_ref queried for unknown usernames; never assigned to a real user
UNKNOWN_USER_REF = -1


def normalize_username(username: Optional[str]) -> Optional[str]:
    cleaned = (username or "").strip().lower()
    return cleaned or None


class AssertionCeremony:
    def __init__(
        self,
        policy: RelyingPartyPolicy,
        challenges: ChallengeStoreProtocol,
        credentials: CredentialRepositoryProtocol,
        users: UserDirectoryProtocol,
    ) -> None:
        self.policy = policy
        self.challenges = challenges
        self.credentials = credentials
        self.users = users

    # ─────────────────────────────────────────────────────────
    # Begin
    # ─────────────────────────────────────────────────────────
    async def begin_assertion(self, username: Optional[str] = None) -> AssertionOptions:
        name = normalize_username(username)
        allow = []
        if name is not None:
            user = await self.users.lookup_by_username(name)
            user_ref = user.user_ref if user is not None else UNKNOWN_USER_REF
            active = await self.credentials.find_all_for_user(user_ref, include_revoked=False)
            if user is None or not active:
                raise CredentialError(ErrorKind.NO_CREDENTIALS, "no usable credentials for username")
            allow = [c.to_descriptor() for c in active]

        issued = await self.challenges.issue(name, purpose=PURPOSE_ASSERTION)
        public_key = {
            "challenge": b64url(issued.challenge),
            "rpId": self.policy.rp_id,
            "timeout": CEREMONY_TIMEOUT_MS,
            "allowCredentials": allow,
            "userVerification": self.policy.user_verification,
        }
        return AssertionOptions(public_key=public_key, challenge_token=issued.token)

    async def resolve_user_ref(self, response: Mapping[str, Any]) -> Optional[int]:
        """Owner of the credential named by `response`; None when unknown or revoked."""
        try:
            credential_id = wa.credential_id_of(response)
        except VerificationError:
            return None
        credential = await self.credentials.find_by_credential_id(credential_id)
        if credential is None or credential.is_revoked:
            return None
        return credential.user_ref

    # ─────────────────────────────────────────────────────────
    # Complete
    # ─────────────────────────────────────────────────────────
    async def complete_assertion(
        self,
        response: Mapping[str, Any],
        challenge_token: str,
        expected_user_ref: Optional[int] = None,
    ) -> VerifiedAssertion:
        # ── [Step 1] Challenge ───────────────────────────────
        consumed = await self.challenges.consume(challenge_token)
        if consumed.purpose != PURPOSE_ASSERTION:
            raise ChallengeError(ErrorKind.CHALLENGE_INVALID, "challenge issued for another ceremony")

        # ── [Step 2] Credential + owner ──────────────────────
        credential = await self._resolve_credential(response, consumed.bound_username, expected_user_ref)

        # ── [Step 3] Client data ─────────────────────────────
        client_data = wa.parse_client_data(wa.response_field(response, "clientDataJSON"))
        wa.verify_client_data(
            client_data,
            expected_type=wa.TYPE_GET,
            expected_origin=self.policy.origin,
            expected_challenge=consumed.challenge,
        )

        # ── [Step 4] Authenticator data ──────────────────────
        auth_data = wa.parse_authenticator_data(wa.response_field(response, "authenticatorData"))
        wa.verify_authenticator_data(
            auth_data,
            rp_id=self.policy.rp_id,
            user_verification_required=self.policy.user_verification_required,
        )

        # ── [Step 5] Signature ───────────────────────────────
        wa.verify_signature(
            credential.public_key,
            bytes(auth_data),
            client_data.hash,
            wa.response_field(response, "signature"),
        )

        # ── [Step 6] Counter + usage ─────────────────────────
        stored, presented = credential.sign_count, auth_data.counter
        if (stored or presented) and presented <= stored:
            await self._flag_clone(credential, stored, presented)
            raise CredentialError(ErrorKind.COUNTER_REGRESSION, "signature counter did not increase")

        used_at = utcnow()
        updated = await self.credentials.update_usage(
            credential.uid,
            expected_sign_count=stored,
            new_sign_count=presented,
            used_at=used_at,
        )
        if not updated:
            raise CredentialError(ErrorKind.COUNTER_REGRESSION, "credential changed concurrently")

        logger.debug("[Passkeys] assertion verified | user_ref={} uid={}", credential.user_ref, credential.uid)
        return VerifiedAssertion(
            credential=replace(credential, sign_count=presented, last_used_at=used_at),
            user_ref=credential.user_ref,
            authenticator_data=auth_data,
            user_verified=auth_data.is_user_verified(),
        )

    # ─────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────
    async def _resolve_credential(
        self,
        response: Mapping[str, Any],
        bound_username: Optional[str],
        expected_user_ref: Optional[int],
    ) -> Credential:
        credential = await self.credentials.find_by_credential_id(wa.credential_id_of(response))
        if credential is None:
            raise CredentialError(ErrorKind.CREDENTIAL_UNKNOWN, "credential id not registered")

        if expected_user_ref is not None and credential.user_ref != expected_user_ref:
            raise CredentialError(ErrorKind.CREDENTIAL_UNKNOWN, "credential belongs to another user")

        if bound_username is not None:
            owner = await self.users.lookup_by_username(bound_username)
            if owner is None or owner.user_ref != credential.user_ref:
                raise CredentialError(ErrorKind.CREDENTIAL_UNKNOWN, "credential not owned by challenged user")

        user_handle = wa.response_field(response, "userHandle", required=False)
        if user_handle is not None:
            try:
                stored_handle = b64url_decode(credential.user_handle)
            except ValueError:
                stored_handle = b""
            if not hmac.compare_digest(user_handle, stored_handle):
                raise CredentialError(ErrorKind.CREDENTIAL_UNKNOWN, "user handle mismatch")

        if credential.is_revoked:
            raise CredentialError(ErrorKind.CREDENTIAL_REVOKED, "credential revoked")
        return credential

    async def _flag_clone(self, credential: Credential, stored: int, presented: int) -> None:
        logger.warning(
            "[Passkeys] counter regression, possible cloned authenticator | uid={} stored={} presented={}",
            credential.uid, stored, presented,
        )
        await self.credentials.flag_for_review(credential.uid, utcnow())
        log_audit_event(
            AuditEvent.CLONE_SUSPECTED,
            status="FAILURE",
            user_ref=credential.user_ref,
            meta_data={"uid": credential.uid, "stored_count": stored, "presented_count": presented},
            hash_usernames=self.policy.hash_usernames,
        )


__all__ = ["AssertionCeremony", "UNKNOWN_USER_REF", "normalize_username"]
