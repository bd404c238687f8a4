# passkeys/services/webauthn_service.py
from __future__ import annotations

"""
WebAuthn Verification Primitives
================================

Thin layer over **python-fido2** for the two ceremonies. fido2 parses the
wire structures (`CollectedClientData`, `AttestationObject`,
`AuthenticatorData`), verifies attestation statements (`fido2.attestation`)
and signatures (`fido2.cose.CoseKey.verify`). This module adds the relying
party checks and translates every fido2 / cryptography failure into a
`VerificationError` carrying the matching `ErrorKind`, so nothing
library-specific escapes to the ceremony engines.

- parse_client_data(...)        → CollectedClientData
- verify_client_data(...)       → type / origin / challenge checks
- parse_attestation_object(...) → AttestationObject
- verify_attestation(...)       → attestation statement check
- parse_authenticator_data(...) → AuthenticatorData
- verify_authenticator_data(...)→ rpIdHash / UP / UV checks
- parse_cose_key(...)           → CoseKey with a supported algorithm
- verify_signature(...)         → assertion signature with a stored COSE key
- user_handle_for(...)          → opaque per-user handle (HMAC-SHA256)
"""

import hashlib
import hmac
import struct
import uuid
from typing import Any, Dict, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from fido2 import cbor
from fido2.attestation import Attestation, InvalidData, InvalidSignature, UnsupportedType
from fido2.cose import CoseKey, UnsupportedKey
from fido2.utils import sha256
from fido2.webauthn import AttestationObject, AuthenticatorData, CollectedClientData

from passkeys.core.encoding import b64url, b64url_decode
from passkeys.core.exceptions import ErrorKind, VerificationError

TYPE_CREATE = CollectedClientData.TYPE.CREATE.value
TYPE_GET = CollectedClientData.TYPE.GET.value

# Attestation formats accepted at registration; the trust path is not
# evaluated since options request `attestation: "none"`.
SUPPORTED_ATTESTATION_FORMATS = ("none", "packed", "fido-u2f")

# fido2's CBOR decoder reports malformed input with builtin exceptions
_DECODE_ERRORS = (ValueError, KeyError, TypeError, IndexError, AttributeError, struct.error)


def _malformed(what: str) -> VerificationError:
    return VerificationError(ErrorKind.SIGNATURE_INVALID, f"malformed {what}")


# ---------------------------
# Response document helpers
# ---------------------------
def response_field(payload: Mapping[str, Any], name: str, *, required: bool = True) -> Optional[bytes]:
    """Decode `payload["response"][name]` from base64url."""
    response = payload.get("response") if isinstance(payload, Mapping) else None
    value = response.get(name) if isinstance(response, Mapping) else None
    if value in (None, ""):
        if required:
            raise _malformed(name)
        return None
    try:
        return b64url_decode(value)
    except (ValueError, TypeError) as exc:
        raise _malformed(name) from exc


def credential_id_of(payload: Mapping[str, Any]) -> bytes:
    """Raw credential id from `rawId` (or `id`) of a PublicKeyCredential document."""
    if not isinstance(payload, Mapping) or payload.get("type", "public-key") != "public-key":
        raise _malformed("credential")
    raw = payload.get("rawId") or payload.get("id")
    try:
        cred_id = b64url_decode(raw)
    except (ValueError, TypeError) as exc:
        raise _malformed("credential id") from exc
    if not cred_id:
        raise _malformed("credential id")
    return cred_id


def transports_of(payload: Mapping[str, Any]) -> Tuple[str, ...]:
    response = payload.get("response") if isinstance(payload, Mapping) else None
    values = response.get("transports") if isinstance(response, Mapping) else None
    if not isinstance(values, list) and isinstance(payload, Mapping):
        values = payload.get("transports")
    if not isinstance(values, list):
        return ()
    return tuple(str(t) for t in values if isinstance(t, str) and t)[:8]


# ---------------------------
# Client data
# ---------------------------
def parse_client_data(raw: bytes) -> CollectedClientData:
    try:
        client_data = CollectedClientData(raw)
    except _DECODE_ERRORS as exc:
        raise _malformed("clientDataJSON") from exc
    if not isinstance(client_data.type, str) or not isinstance(client_data.origin, str):
        raise _malformed("clientDataJSON")
    return client_data


def verify_client_data(
    client_data: CollectedClientData,
    *,
    expected_type: str,
    expected_origin: str,
    expected_challenge: bytes,
) -> None:
    """Type, origin (exact) and challenge (byte-for-byte) checks."""
    if client_data.type != expected_type:
        raise VerificationError(ErrorKind.TYPE_MISMATCH, f"client data type {client_data.type!r}")
    if client_data.origin != expected_origin:
        raise VerificationError(ErrorKind.ORIGIN_MISMATCH, "client data origin mismatch")
    if not hmac.compare_digest(bytes(client_data.challenge), bytes(expected_challenge)):
        raise VerificationError(ErrorKind.CHALLENGE_INVALID, "client data challenge mismatch")


# ---------------------------
# Authenticator data
# ---------------------------
def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    try:
        return AuthenticatorData(raw)
    except _DECODE_ERRORS as exc:
        raise _malformed("authenticatorData") from exc


def verify_authenticator_data(auth_data: AuthenticatorData, *, rp_id: str, user_verification_required: bool) -> None:
    if not hmac.compare_digest(bytes(auth_data.rp_id_hash), sha256(rp_id.encode("utf-8"))):
        raise VerificationError(ErrorKind.ORIGIN_MISMATCH, "rpIdHash mismatch")
    if not auth_data.is_user_present():
        raise VerificationError(ErrorKind.USER_VERIFICATION_REQUIRED, "user presence flag not set")
    if user_verification_required and not auth_data.is_user_verified():
        raise VerificationError(ErrorKind.USER_VERIFICATION_REQUIRED, "user verification flag not set")


def format_aaguid(aaguid: Optional[bytes]) -> str:
    if not aaguid:
        return ""
    return str(uuid.UUID(bytes=bytes(aaguid)))


def describe_flags(auth_data: AuthenticatorData) -> Dict[str, bool]:
    return {
        "up": auth_data.is_user_present(),
        "uv": auth_data.is_user_verified(),
        "at": auth_data.is_attested(),
        "be": auth_data.is_backup_eligible(),
        "bs": auth_data.is_backed_up(),
    }


# ---------------------------
# COSE keys
# ---------------------------
def cose_algorithm(public_key: Mapping[int, Any]) -> int:
    try:
        return int(public_key[3])
    except (KeyError, TypeError, ValueError) as exc:
        raise VerificationError(ErrorKind.ALGORITHM_NOT_ALLOWED, "public key has no algorithm") from exc


def parse_cose_key(public_key: Mapping[int, Any]) -> CoseKey:
    """`CoseKey` for a decoded COSE_Key map; unknown algorithms are refused."""
    algorithm = cose_algorithm(public_key)
    try:
        key = CoseKey.parse(dict(public_key))
    except _DECODE_ERRORS as exc:
        raise _malformed("COSE key") from exc
    if isinstance(key, UnsupportedKey):
        raise VerificationError(ErrorKind.ALGORITHM_NOT_ALLOWED, f"unsupported COSE algorithm {algorithm}")
    return key


def encode_public_key(public_key: Mapping[int, Any]) -> bytes:
    return cbor.encode(dict(public_key))


# ---------------------------
# Attestation (registration)
# ---------------------------
def parse_attestation_object(raw: bytes) -> AttestationObject:
    try:
        attestation = AttestationObject(raw)
    except _DECODE_ERRORS as exc:
        raise _malformed("attestationObject") from exc
    if not isinstance(attestation.fmt, str) or not isinstance(attestation.att_stmt, Mapping):
        raise _malformed("attestationObject")
    return attestation


def verify_attestation(attestation: AttestationObject, client_data_hash: bytes) -> None:
    """
    Check the attestation statement signature for its format.

    The trust path is not evaluated; this only proves the statement is
    internally consistent with the attested credential.
    """
    if attestation.fmt not in SUPPORTED_ATTESTATION_FORMATS:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, f"unsupported attestation format {attestation.fmt!r}")
    if attestation.auth_data.credential_data is None:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, "attested credential data missing")
    verifier = Attestation.for_type(attestation.fmt)()
    try:
        verifier.verify(attestation.att_stmt, attestation.auth_data, client_data_hash)
    except (InvalidSignature, InvalidData, UnsupportedType) as exc:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, f"attestation statement invalid: {exc}") from exc
    except (NotImplementedError, *_DECODE_ERRORS) as exc:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, "attestation statement invalid") from exc


# ---------------------------
# Assertion signature
# ---------------------------
def verify_signature(public_key: bytes, auth_data_raw: bytes, client_data_hash: bytes, signature: bytes) -> None:
    """Verify `signature` over `authenticatorData || sha256(clientDataJSON)`."""
    try:
        cose_key = cbor.decode(public_key)
        if not isinstance(cose_key, Mapping):
            raise ValueError("stored public key is not a map")
        key = parse_cose_key(cose_key)
        key.verify(bytes(auth_data_raw) + client_data_hash, signature)
    except CryptoInvalidSignature as exc:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, "assertion signature invalid") from exc
    except VerificationError as exc:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, f"stored public key unusable: {exc.message}") from exc
    except (NotImplementedError, *_DECODE_ERRORS) as exc:
        raise VerificationError(ErrorKind.SIGNATURE_INVALID, "stored public key unusable") from exc


# ---------------------------
# User handle
# ---------------------------
def user_handle_for(secret: bytes, user_ref: int) -> bytes:
    """Opaque, stable handle; never the raw user id."""
    return hmac.new(secret, str(user_ref).encode("utf-8"), hashlib.sha256).digest()


__all__ = [
    "TYPE_CREATE",
    "TYPE_GET",
    "SUPPORTED_ATTESTATION_FORMATS",
    "AttestationObject",
    "AuthenticatorData",
    "CollectedClientData",
    "b64url",
    "b64url_decode",
    "sha256",
    "response_field",
    "credential_id_of",
    "transports_of",
    "parse_client_data",
    "verify_client_data",
    "parse_authenticator_data",
    "verify_authenticator_data",
    "format_aaguid",
    "describe_flags",
    "cose_algorithm",
    "parse_cose_key",
    "encode_public_key",
    "parse_attestation_object",
    "verify_attestation",
    "verify_signature",
    "user_handle_for",
]
