from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, LargeBinary, String, text
from sqlalchemy.orm import Mapped, mapped_column, validates

from passkeys.db.base_class import Base, PKMixin, TimestampMixin


class PasskeyCredential(PKMixin, TimestampMixin, Base):
    """
    PasskeyCredential Model
    =======================
    One row per registered authenticator per user.

    Attributes
    ----------
    user_ref : int
        Reference into the host user directory (no FK; the directory is not
        owned by this service).
    credential_id : str
        Base64url credential id as returned by the authenticator. Unique.
    public_key : bytes
        CBOR-encoded COSE public key.
    algorithm : int
        COSE algorithm identifier (e.g. -7 for ES256).
    sign_count : int
        Last accepted authenticator signature counter.
    revoked_at / revoked_by : set exactly once, never cleared.
    flagged_at : set when a counter regression suggests a cloned authenticator.
    """

    __tablename__ = "passkey_credential"

    user_ref: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    credential_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    public_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    algorithm: Mapped[int] = mapped_column(Integer, nullable=False)
    sign_count: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))

    user_handle: Mapped[str] = mapped_column(String(128), nullable=False, server_default="")
    aaguid: Mapped[str] = mapped_column(String(36), nullable=False, server_default="")
    transports: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    label: Mapped[str] = mapped_column(String(128), nullable=False, server_default="Passkey")

    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    flagged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("uq_passkey_credential_credential_id", "credential_id", unique=True),
        Index("ix_passkey_credential_user_active", "user_ref", "revoked_at"),
    )

    @validates("credential_id")
    def validate_credential_id(self, key, value):
        if not value or not value.strip():
            raise ValueError("Credential ID must be a non-empty string.")
        return value.strip()

    @validates("public_key")
    def validate_public_key(self, key, value):
        if not value:
            raise ValueError("Public key must be a non-empty binary string.")
        return value
