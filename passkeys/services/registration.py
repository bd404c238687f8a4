# passkeys/services/registration.py
from __future__ import annotations

"""
Registration Ceremony
=====================

Two steps, both for an already authenticated user:

1. `begin_registration()` issues a registration challenge and builds the
   `PublicKeyCredentialCreationOptions` document the browser hands to
   `navigator.credentials.create()`.
2. `complete_registration()` consumes the challenge, verifies the
   attestation response and persists the new credential.

Nothing is written unless every check passed; a failure raises a
`PasskeyError` whose `kind` names the first check that failed.
"""

from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from passkeys.core.encoding import b64url
from passkeys.core.exceptions import ChallengeError, CredentialError, ErrorKind, VerificationError
from passkeys.core.policy import RelyingPartyPolicy
from passkeys.domain import (
    PURPOSE_REGISTRATION,
    Credential,
    RegistrationOptions,
    UserRecord,
    sanitize_label,
    utcnow,
)
from passkeys.repositories.credential import CredentialRepositoryProtocol
from passkeys.services import webauthn_service as wa
from passkeys.services.audit_log_service import AuditEvent, log_audit_event
from passkeys.services.challenge_store import ChallengeStoreProtocol

CEREMONY_TIMEOUT_MS = 60000


class RegistrationCeremony:
    def __init__(
        self,
        policy: RelyingPartyPolicy,
        challenges: ChallengeStoreProtocol,
        credentials: CredentialRepositoryProtocol,
    ) -> None:
        self.policy = policy
        self.challenges = challenges
        self.credentials = credentials

    def user_handle(self, user_ref: int) -> bytes:
        return wa.user_handle_for(self.policy.user_handle_secret, user_ref)

    # ─────────────────────────────────────────────────────────
    # Begin
    # ─────────────────────────────────────────────────────────
    async def begin_registration(
        self,
        user: UserRecord,
        existing: Optional[Iterable[Credential]] = None,
    ) -> RegistrationOptions:
        """
        Build creation options for `user`.

        `existing` defaults to every credential the user ever registered
        (revoked ones included) so the authenticator refuses to create a
        second credential it already holds.
        """
        if existing is None:
            existing = await self.credentials.find_all_for_user(user.user_ref, include_revoked=True)

        issued = await self.challenges.issue(None, purpose=PURPOSE_REGISTRATION)
        public_key = {
            "rp": {"id": self.policy.rp_id, "name": self.policy.rp_name},
            "user": {
                "id": b64url(self.user_handle(user.user_ref)),
                "name": user.username,
                "displayName": user.display_name or user.username,
            },
            "challenge": b64url(issued.challenge),
            "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in self.policy.allowed_algorithm_ids],
            "timeout": CEREMONY_TIMEOUT_MS,
            "attestation": "none",
            "excludeCredentials": [{"type": "public-key", "id": c.credential_id_b64} for c in existing],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "requireResidentKey": False,
                "userVerification": self.policy.user_verification,
            },
        }
        logger.debug("[Passkeys] registration options issued | user_ref={}", user.user_ref)
        return RegistrationOptions(public_key=public_key, challenge_token=issued.token)

    # ─────────────────────────────────────────────────────────
    # Complete
    # ─────────────────────────────────────────────────────────
    async def complete_registration(
        self,
        response: Mapping[str, Any],
        challenge_token: str,
        user: UserRecord,
        *,
        label: Optional[str] = None,
    ) -> Credential:
        """
        Verify an attestation response and store the credential.

        Steps
        -----
        - **[Step 1]** Consume the challenge (single use, purpose bound).
        - **[Step 2]** Client data: type, origin, challenge.
        - **[Step 3]** Authenticator data: rpIdHash, UP, UV policy.
        - **[Step 4]** Algorithm policy, then the attestation statement.
        - **[Step 5]** Reject known credential ids, then persist.
        """
        # ── [Step 1] Challenge ───────────────────────────────
        consumed = await self.challenges.consume(challenge_token)
        if consumed.purpose != PURPOSE_REGISTRATION:
            raise ChallengeError(ErrorKind.CHALLENGE_INVALID, "challenge issued for another ceremony")

        # ── [Step 2] Client data ─────────────────────────────
        client_data = wa.parse_client_data(wa.response_field(response, "clientDataJSON"))
        wa.verify_client_data(
            client_data,
            expected_type=wa.TYPE_CREATE,
            expected_origin=self.policy.origin,
            expected_challenge=consumed.challenge,
        )

        # ── [Step 3] Authenticator data ──────────────────────
        attestation = wa.parse_attestation_object(wa.response_field(response, "attestationObject"))
        auth_data = attestation.auth_data
        wa.verify_authenticator_data(
            auth_data,
            rp_id=self.policy.rp_id,
            user_verification_required=self.policy.user_verification_required,
        )

        # ── [Step 4] Algorithm policy, then attestation ──────
        credential_data = auth_data.credential_data
        if credential_data is None or not credential_data.credential_id:
            raise VerificationError(ErrorKind.SIGNATURE_INVALID, "attested credential data missing")
        cose_key = credential_data.public_key
        algorithm = wa.cose_algorithm(cose_key)
        if algorithm not in self.policy.allowed_algorithm_ids:
            raise VerificationError(ErrorKind.ALGORITHM_NOT_ALLOWED, f"algorithm {algorithm} not allowed")
        wa.parse_cose_key(cose_key)
        wa.verify_attestation(attestation, client_data.hash)

        credential_id = bytes(credential_data.credential_id)
        claimed = response.get("rawId") or response.get("id")
        if claimed and wa.credential_id_of(response) != credential_id:
            raise VerificationError(ErrorKind.SIGNATURE_INVALID, "credential id differs from attested id")

        # ── [Step 5] Persist ─────────────────────────────────
        if await self.credentials.find_by_credential_id(credential_id) is not None:
            raise CredentialError(ErrorKind.CREDENTIAL_DUPLICATE, "credential id already registered")

        credential = Credential(
            user_ref=user.user_ref,
            credential_id=credential_id,
            public_key=wa.encode_public_key(cose_key),
            algorithm=algorithm,
            sign_count=auth_data.counter,
            user_handle=b64url(self.user_handle(user.user_ref)),
            aaguid=wa.format_aaguid(credential_data.aaguid),
            transports=wa.transports_of(response),
            label=sanitize_label(label),
            created_at=utcnow(),
        )
        saved = await self.credentials.save(credential)

        logger.info("[Passkeys] credential registered | user_ref={} uid={}", user.user_ref, saved.uid)
        log_audit_event(
            AuditEvent.PASSKEY_REGISTERED,
            username=user.username,
            user_ref=user.user_ref,
            meta_data={"uid": saved.uid, "aaguid": saved.aaguid, "algorithm": algorithm, "fmt": attestation.fmt},
            hash_usernames=self.policy.hash_usernames,
        )
        return saved


__all__ = ["RegistrationCeremony", "CEREMONY_TIMEOUT_MS"]
