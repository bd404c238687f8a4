# passkeys/schemas/passkeys.py

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────── Browser envelope ────────────────
class PublicKeyCredential(BaseModel):
    """Generic WebAuthn credential envelope from the browser."""
    id: str = Field(..., min_length=1, max_length=1400)
    rawId: Optional[str] = Field(None, max_length=1400)
    type: Literal["public-key"] = "public-key"
    response: Dict[str, Any]
    clientExtensionResults: Optional[Dict[str, Any]] = None
    authenticatorAttachment: Optional[str] = None
    model_config = ConfigDict(extra="allow")


# ──────────────── Login ────────────────
class LoginOptionsRequest(BaseModel):
    username: Optional[str] = Field(None, max_length=255, description="Omit for discoverable login")


class CeremonyOptionsResponse(BaseModel):
    options: Dict[str, Any]  # the `publicKey` document, property names match WebAuthn
    challengeToken: str


class LoginVerifyRequest(BaseModel):
    username: Optional[str] = Field(None, max_length=255)
    assertion: PublicKeyCredential
    challengeToken: str = Field(..., min_length=1, max_length=256)


class LoginVerifyResponse(BaseModel):
    status: Literal["ok"] = "ok"
    userRef: int


# ──────────────── Registration / management ────────────────
class RegistrationVerifyRequest(BaseModel):
    credential: PublicKeyCredential
    challengeToken: str = Field(..., min_length=1, max_length=256)
    label: Optional[str] = Field(None, max_length=512, description="Display name; trimmed to 128 chars")


class CredentialInfo(BaseModel):
    uid: int
    label: str
    createdAt: Optional[datetime] = None
    lastUsedAt: Optional[datetime] = None
    aaguid: Optional[str] = None
    transports: List[str] = Field(default_factory=list)


class AdminCredentialInfo(CredentialInfo):
    userRef: int
    signCount: int = 0
    revokedAt: Optional[datetime] = None
    revokedBy: Optional[int] = None
    flaggedAt: Optional[datetime] = None


class RegistrationVerifyResponse(BaseModel):
    status: Literal["ok"] = "ok"
    credential: CredentialInfo


class CredentialListResponse(BaseModel):
    credentials: List[CredentialInfo]
    count: int


class RenameRequest(BaseModel):
    uid: int = Field(..., ge=1)
    label: str = Field(..., max_length=512)


class RemoveRequest(BaseModel):
    uid: int = Field(..., ge=1)


class StatusResponse(BaseModel):
    status: Literal["ok"] = "ok"


# ──────────────── Admin ────────────────
class AdminCredentialListResponse(BaseModel):
    userRef: int
    credentials: List[AdminCredentialInfo]
    count: int


class AdminRevokeRequest(BaseModel):
    userRef: int
    uid: int = Field(..., ge=1)


class AdminRevokeAllRequest(BaseModel):
    userRef: int


class AdminRevokeAllResponse(BaseModel):
    status: Literal["ok"] = "ok"
    revokedCount: int


class AdminUnlockRequest(BaseModel):
    userRef: int
    username: Optional[str] = Field(None, max_length=255, description="Defaults to the directory username")


class AdminUnlockResponse(BaseModel):
    status: Literal["ok"] = "ok"
    clearedKeys: int
