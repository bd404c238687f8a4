# passkeys/core/exceptions.py
from __future__ import annotations

"""
Passkeys - Application Exceptions
=================================
Two layers live here:

1. **Core errors** (`PasskeyError` and friends). Every failure of a
   ceremony, store or guard is one of these and carries an `ErrorKind`.
   Callers branch on `exc.kind`, never on the exception class.
2. **HTTP errors** (`AppException`), a thin layer over FastAPI's
   `HTTPException` that renders our problem-like JSON shape.

The mapping between the two is `to_http_exception()`: every kind except
`LockedOut` and `InfrastructureError` collapses into the same generic
"Authentication failed" response so the outside world cannot tell *why*
authentication failed.

Usage
-----
    try:
        verified = await assertion.complete_assertion(payload, token, user_ref)
    except PasskeyError as exc:
        logger.info("passkey failure kind={}", exc.kind.value)
        raise to_http_exception(exc)
"""

from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

__all__ = [
    "ErrorKind",
    "PasskeyError",
    "ChallengeError",
    "VerificationError",
    "CredentialError",
    "LockedOutError",
    "InfrastructureError",
    "DuplicateCredentialError",
    "AppException",
    "PasskeyHTTPException",
    "to_http_exception",
    "GENERIC_AUTH_FAILURE",
]

GENERIC_AUTH_FAILURE = "Authentication failed"


# ──────────────────────────────────────────────────────────────
# 🏷️ Error taxonomy
# ──────────────────────────────────────────────────────────────
class ErrorKind(str, Enum):
    CHALLENGE_INVALID = "ChallengeInvalid"
    CHALLENGE_EXPIRED = "ChallengeExpired"
    ORIGIN_MISMATCH = "OriginMismatch"
    TYPE_MISMATCH = "TypeMismatch"
    SIGNATURE_INVALID = "SignatureInvalid"
    ALGORITHM_NOT_ALLOWED = "AlgorithmNotAllowed"
    USER_VERIFICATION_REQUIRED = "UserVerificationRequired"
    CREDENTIAL_UNKNOWN = "CredentialUnknown"
    CREDENTIAL_REVOKED = "CredentialRevoked"
    CREDENTIAL_DUPLICATE = "CredentialDuplicate"
    COUNTER_REGRESSION = "CounterRegression"
    LOCKED_OUT = "LockedOut"
    NO_CREDENTIALS = "NoCredentials"
    INFRASTRUCTURE_ERROR = "InfrastructureError"


# ──────────────────────────────────────────────────────────────
# 📦 Core errors
# ──────────────────────────────────────────────────────────────
class PasskeyError(Exception):
    """Base for every typed failure of the relying-party core.

    Attributes
    ----------
    kind : ErrorKind
        Coarse failure category (safe to log, never shown verbatim to clients
        except `LockedOut` / `InfrastructureError`).
    message : str
        Internal detail for logs.
    """

    default_kind: ErrorKind = ErrorKind.SIGNATURE_INVALID

    def __init__(self, kind: Optional[ErrorKind] = None, message: str = "") -> None:
        self.kind: ErrorKind = kind or self.default_kind
        self.message: str = message or self.kind.value
        super().__init__(self.message)

    def __repr__(self) -> str:  # pragma: no cover (repr convenience)
        return f"{self.__class__.__name__}(kind={self.kind.value!r}, message={self.message!r})"

    @property
    def is_infrastructure(self) -> bool:
        return self.kind is ErrorKind.INFRASTRUCTURE_ERROR


class ChallengeError(PasskeyError):
    """Unknown, reused, expired or mis-purposed challenge token."""
    default_kind = ErrorKind.CHALLENGE_INVALID


class VerificationError(PasskeyError):
    """Client data, authenticator data, attestation or signature mismatch."""
    default_kind = ErrorKind.SIGNATURE_INVALID


class CredentialError(PasskeyError):
    """Unknown, revoked, duplicated or cloned credential, or none at all."""
    default_kind = ErrorKind.CREDENTIAL_UNKNOWN


class DuplicateCredentialError(CredentialError, ValueError):
    """Raised by repositories when a credential id is already stored."""
    default_kind = ErrorKind.CREDENTIAL_DUPLICATE


class LockedOutError(PasskeyError):
    """Too many recent failures for this (username, client) key."""
    default_kind = ErrorKind.LOCKED_OUT

    def __init__(self, kind: Optional[ErrorKind] = None, message: str = "", *, retry_after: Optional[int] = None) -> None:
        super().__init__(kind, message)
        self.retry_after = retry_after


class InfrastructureError(PasskeyError):
    """Store/network failure; says nothing about credential validity."""
    default_kind = ErrorKind.INFRASTRUCTURE_ERROR


# ──────────────────────────────────────────────────────────────
# 🌐 HTTP layer
# ──────────────────────────────────────────────────────────────
class AppException(HTTPException):
    """Base application-level HTTP exception with optional metadata.

    Attributes
    -----------
    status_code : int
        HTTP status code.
    message : str
        Human-readable error message (serialized as `detail` as well).
    code : int
        Optional internal/typed error code. Defaults to `status_code`.
    request_id : str | None
        Optional request correlation id.
    details : Any
        Machine-readable details.
    headers : dict | None
        Optional headers (e.g., `{"Retry-After": "900"}`).
    """

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code: int = int(code or status_code)
        self.message: str = message
        self.request_id: Optional[str] = request_id
        self.details: Optional[Any] = details

    def to_problem(self, *, fallback_request_id: Optional[str] = None) -> Dict[str, Any]:
        """Return a dict matching our problem-like JSON shape."""
        body: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "request_id": self.request_id or fallback_request_id or "N/A",
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class PasskeyHTTPException(AppException):
    """Outward face of a `PasskeyError` (kind is kept for logging only)."""

    def __init__(self, *, kind: ErrorKind, status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(status_code=status_code, message=message, headers=headers)
        self.kind = kind


def to_http_exception(exc: PasskeyError, *, retry_after: Optional[int] = None) -> PasskeyHTTPException:
    """Collapse a core error into the response a client is allowed to see."""
    if exc.kind is ErrorKind.LOCKED_OUT:
        retry_after = retry_after or getattr(exc, "retry_after", None)
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        return PasskeyHTTPException(
            kind=exc.kind,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            message="Too many requests",
            headers=headers,
        )
    if exc.kind is ErrorKind.INFRASTRUCTURE_ERROR:
        return PasskeyHTTPException(
            kind=exc.kind,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            message="Service temporarily unavailable, retry later",
            headers={"Retry-After": "5"},
        )
    return PasskeyHTTPException(
        kind=exc.kind,
        status_code=status.HTTP_401_UNAUTHORIZED,
        message=GENERIC_AUTH_FAILURE,
    )
