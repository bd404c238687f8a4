# passkeys/services/audit_log_service.py
from __future__ import annotations

"""
Passkeys - Audit Log Service
============================

Purpose
-------
Emit structured audit records for passkey ceremonies, lockouts and
credential administration.

Design notes
------------
- Records go through **loguru** bound with `audit=True`, the event name,
  status and scrubbed metadata; the JSON sink (`LOG_JSON=1`) ships them with
  every field. Hosts route them elsewhere by adding a sink filtered on
  `record["extra"]["audit"]`.
- Usernames are replaced by `username_hash` (sha256 hex) when
  `hash_usernames` is on.
- Secret-looking keys (tokens, challenges, signatures, assertion
  payloads, ...) are removed recursively.
- **Best-effort**: failures are logged, never raised, so ceremonies are
  never blocked by auditing.

Usage
-----
    log_audit_event(
        AuditEvent.PASSKEY_LOGIN_FAILED,
        status="FAILURE",
        username="alice",
        client_id="203.0.113.7",
        meta_data={"kind": "SignatureInvalid"},
        hash_usernames=policy.hash_usernames,
    )
"""

from enum import Enum
import hashlib
import json
from typing import Any, Dict, Optional, Union

from loguru import logger


# ─────────────────────────────────────────────────────────────
# 📋 Enum: Audit Event Types
# ─────────────────────────────────────────────────────────────
class AuditEvent(str, Enum):
    # 🔑 Ceremonies
    PASSKEY_REGISTERED = "PASSKEY_REGISTERED"
    PASSKEY_LOGIN_SUCCEEDED = "PASSKEY_LOGIN_SUCCEEDED"
    PASSKEY_LOGIN_FAILED = "PASSKEY_LOGIN_FAILED"

    # 🚧 Guards
    LOCKOUT_TRIGGERED = "LOCKOUT_TRIGGERED"
    LOCKOUT_RESET = "LOCKOUT_RESET"
    PASSWORD_LOGIN_BLOCKED = "PASSWORD_LOGIN_BLOCKED"
    CLONE_SUSPECTED = "CLONE_SUSPECTED"

    # 🛠 Management
    PASSKEY_RENAMED = "PASSKEY_RENAMED"
    PASSKEY_REVOKED = "PASSKEY_REVOKED"


# ─────────────────────────────────────────────────────────────
# 🔎 Helpers: username hashing & meta scrubbing
# ─────────────────────────────────────────────────────────────
_SENSITIVE_KEYS = {
    "authorization",
    "token",
    "challenge",
    "challengetoken",
    "challenge_token",
    "signature",
    "assertion",
    "attestation",
    "attestationobject",
    "clientdatajson",
    "authenticatordata",
    "userhandle",
    "password",
    "secret",
    "cookie",
}


def hash_username(username: str) -> str:
    return hashlib.sha256((username or "").encode("utf-8")).hexdigest()


def _scrub(obj: Any) -> Any:
    """Recursively remove secret-looking keys from dicts/lists."""
    if isinstance(obj, dict):
        return {k: _scrub(v) for k, v in obj.items() if str(k).lower() not in _SENSITIVE_KEYS}
    if isinstance(obj, (list, tuple)):
        return [_scrub(v) for v in obj]
    return obj


def _safe_metadata(meta_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not meta_data:
        return {}
    if not isinstance(meta_data, dict):
        meta_data = {"raw": str(meta_data)}
    meta_data = _scrub(meta_data)
    try:
        json.dumps(meta_data)
        return meta_data
    except (TypeError, ValueError):
        return {"raw": "non-serializable metadata"}


# ─────────────────────────────────────────────────────────────
# 🧠 Audit Writer (best-effort, never raises)
# ─────────────────────────────────────────────────────────────
def log_audit_event(
    event: Union[str, AuditEvent],
    *,
    status: str = "SUCCESS",
    username: Optional[str] = None,
    user_ref: Optional[int] = None,
    client_id: Optional[str] = None,
    meta_data: Optional[Dict[str, Any]] = None,
    hash_usernames: bool = True,
) -> None:
    """Emit one audit record.

    Any exception is caught and logged; callers do not need try/except.
    """
    try:
        name = event.value if isinstance(event, AuditEvent) else str(event)
        fields: Dict[str, Any] = {
            "audit": True,
            "event": name,
            "status": str(status or "").upper(),
        }
        if username is not None:
            if hash_usernames:
                fields["username_hash"] = hash_username(username)
            else:
                fields["username"] = username
        if user_ref is not None:
            fields["user_ref"] = user_ref
        if client_id:
            fields["client_id"] = client_id
        meta = _safe_metadata(meta_data)
        if meta:
            fields["meta"] = meta

        level = "WARNING" if fields["status"] != "SUCCESS" else "INFO"
        logger.bind(**fields).log(level, "[AUDIT] {}", name)
    except Exception as e:  # pragma: no cover (best-effort path)
        logger.exception("[AUDIT] Failed to emit audit event: {}", e)


__all__ = ["AuditEvent", "log_audit_event", "hash_username"]
