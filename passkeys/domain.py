from __future__ import annotations

"""
Domain value objects shared by the stores, the ceremony engines and the HTTP
layer. Framework-free: nothing here imports FastAPI or SQLAlchemy.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from passkeys.core.encoding import b64url

PURPOSE_REGISTRATION = "registration"
PURPOSE_ASSERTION = "assertion"

DEFAULT_LABEL = "Passkey"
MAX_LABEL_LENGTH = 128


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def sanitize_label(label: Optional[str]) -> str:
    """Trim, cap at 128 chars, default to "Passkey"."""
    cleaned = " ".join((label or "").split())[:MAX_LABEL_LENGTH].strip()
    return cleaned or DEFAULT_LABEL


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ─────────────────────────────────────────────────────────────
# Users (owned by the host directory)
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class UserRecord:
    user_ref: int
    username: str
    display_name: str = ""
    is_admin: bool = False
    password_login_enabled: bool = True


# ─────────────────────────────────────────────────────────────
# Credentials
# ─────────────────────────────────────────────────────────────
@dataclass
class Credential:
    """One registered authenticator. `uid` is None until persisted."""

    user_ref: int
    credential_id: bytes
    public_key: bytes
    algorithm: int
    sign_count: int = 0
    user_handle: str = ""
    aaguid: str = ""
    transports: Tuple[str, ...] = ()
    label: str = DEFAULT_LABEL
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    flagged_at: Optional[datetime] = None
    uid: Optional[int] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def credential_id_b64(self) -> str:
        return b64url(self.credential_id)

    def to_descriptor(self) -> Dict[str, Any]:
        """`PublicKeyCredentialDescriptor` for allow/exclude lists."""
        descriptor: Dict[str, Any] = {"type": "public-key", "id": self.credential_id_b64}
        if self.transports:
            descriptor["transports"] = list(self.transports)
        return descriptor

    def to_info(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "label": self.label,
            "createdAt": _iso(self.created_at),
            "lastUsedAt": _iso(self.last_used_at),
            "aaguid": self.aaguid,
            "transports": list(self.transports),
        }

    def to_admin_info(self) -> Dict[str, Any]:
        info = self.to_info()
        info.update(
            {
                "userRef": self.user_ref,
                "signCount": self.sign_count,
                "revokedAt": _iso(self.revoked_at),
                "revokedBy": self.revoked_by,
                "flaggedAt": _iso(self.flagged_at),
            }
        )
        return info


# ─────────────────────────────────────────────────────────────
# Challenges
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class IssuedChallenge:
    challenge: bytes = field(repr=False)
    token: str = field(repr=False)
    purpose: str = PURPOSE_ASSERTION
    expires_at: float = 0.0


@dataclass(frozen=True)
class ConsumedChallenge:
    challenge: bytes = field(repr=False)
    bound_username: Optional[str] = None
    purpose: str = PURPOSE_ASSERTION


# ─────────────────────────────────────────────────────────────
# Ceremony results
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class RegistrationOptions:
    public_key: Dict[str, Any]
    challenge_token: str

    def to_dict(self) -> Dict[str, Any]:
        return {"options": self.public_key, "challengeToken": self.challenge_token}


@dataclass(frozen=True)
class AssertionOptions:
    public_key: Dict[str, Any]
    challenge_token: str

    def to_dict(self) -> Dict[str, Any]:
        return {"options": self.public_key, "challengeToken": self.challenge_token}


@dataclass(frozen=True)
class VerifiedAssertion:
    credential: Credential
    user_ref: int
    authenticator_data: Any  # fido2.webauthn.AuthenticatorData
    user_verified: bool = False


__all__ = [
    "PURPOSE_REGISTRATION",
    "PURPOSE_ASSERTION",
    "DEFAULT_LABEL",
    "MAX_LABEL_LENGTH",
    "utcnow",
    "as_utc",
    "sanitize_label",
    "UserRecord",
    "Credential",
    "IssuedChallenge",
    "ConsumedChallenge",
    "RegistrationOptions",
    "AssertionOptions",
    "VerifiedAssertion",
]
