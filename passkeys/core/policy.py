# passkeys/core/policy.py
from __future__ import annotations

"""
Relying-Party Policy
====================

Immutable value object built once at startup and handed to every component
(challenge store, lockout guard, ceremony engines, HTTP layer).

- `user_verification` is normalized to one of `required | preferred |
  discouraged`; anything else silently becomes `required` so that a typo
  never locks everybody out.
- `allowed_algorithms` keeps declaration order (it becomes the order of
  `pubKeyCredParams`).
"""

from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Tuple, TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:  # pragma: no cover
    from passkeys.core.config import Settings

USER_VERIFICATION_VALUES = ("required", "preferred", "discouraged")

# COSE algorithm identifiers (IANA registry)
ALGORITHM_MAP = {
    "ES256": -7,
    "ES384": -35,
    "ES512": -36,
    "RS256": -257,
    "EdDSA": -8,
}


def normalize_user_verification(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    return v if v in USER_VERIFICATION_VALUES else "required"


def parse_algorithms(declaration: str | Iterable[str] | None) -> Tuple[str, ...]:
    """Parse `"ES256, RS256"` (or an iterable) into an ordered, trimmed tuple."""
    if declaration is None:
        return ()
    items = declaration.split(",") if isinstance(declaration, str) else list(declaration)
    return tuple(s.strip() for s in items if s and s.strip())


@dataclass(frozen=True)
class RelyingPartyPolicy:
    rp_id: str = ""
    rp_name: str = "Passkeys"
    origin: str = ""
    challenge_ttl_seconds: int = 120
    user_verification: str = "required"
    discoverable_login: bool = False
    disable_password_login: bool = False
    rate_limit_max_attempts: int = 10
    rate_limit_window_seconds: int = 300
    lockout_threshold: int = 5
    lockout_duration_seconds: int = 900
    allowed_algorithms: Tuple[str, ...] = ("ES256",)
    user_handle_secret: bytes = field(default=b"", repr=False)
    hash_usernames: bool = True

    def __post_init__(self) -> None:
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "user_verification", normalize_user_verification(self.user_verification))
        object.__setattr__(self, "allowed_algorithms", parse_algorithms(self.allowed_algorithms))
        object.__setattr__(self, "rp_id", (self.rp_id or "").strip().lower())
        object.__setattr__(self, "origin", (self.origin or "").strip().rstrip("/"))

    # ── Construction ─────────────────────────────────────────
    @classmethod
    def from_settings(cls, settings: "Settings") -> "RelyingPartyPolicy":
        return cls(
            rp_id=settings.PASSKEY_RP_ID,
            rp_name=settings.PASSKEY_RP_NAME,
            origin=settings.PASSKEY_ORIGIN,
            challenge_ttl_seconds=settings.PASSKEY_CHALLENGE_TTL_SECONDS,
            user_verification=settings.PASSKEY_USER_VERIFICATION,
            discoverable_login=settings.PASSKEY_DISCOVERABLE_LOGIN,
            disable_password_login=settings.PASSKEY_DISABLE_PASSWORD_LOGIN,
            rate_limit_max_attempts=settings.PASSKEY_RATE_LIMIT_MAX_ATTEMPTS,
            rate_limit_window_seconds=settings.PASSKEY_RATE_LIMIT_WINDOW_SECONDS,
            lockout_threshold=settings.PASSKEY_LOCKOUT_THRESHOLD,
            lockout_duration_seconds=settings.PASSKEY_LOCKOUT_DURATION_SECONDS,
            allowed_algorithms=settings.PASSKEY_ALLOWED_ALGORITHMS,
            user_handle_secret=settings.PASSKEY_USER_HANDLE_SECRET.get_secret_value().encode("utf-8"),
            hash_usernames=settings.PASSKEY_HASH_USERNAMES_IN_LOGS,
        )

    # ── Derived ──────────────────────────────────────────────
    @property
    def user_verification_required(self) -> bool:
        return self.user_verification == "required"

    @property
    def allowed_algorithm_ids(self) -> Tuple[int, ...]:
        """COSE ids in declaration order; unknown names are skipped."""
        ids = []
        for name in self.allowed_algorithms:
            alg = ALGORITHM_MAP.get(name)
            if alg is None:
                logger.warning("Ignoring unknown passkey algorithm {!r}", name)
                continue
            if alg not in ids:
                ids.append(alg)
        return tuple(ids)

    def for_request(self, host: str, scheme: str = "https", port: Optional[int] = None) -> "RelyingPartyPolicy":
        """
        Fill an empty `rp_id`/`origin` from the incoming request.

        The RP id never carries a port; the origin does when it is not the
        scheme default.
        """
        if self.rp_id and self.origin:
            return self
        hostname = (host or "localhost").strip().lower()
        rp_id = self.rp_id or hostname
        origin = self.origin
        if not origin:
            default_port = 443 if scheme == "https" else 80
            netloc = hostname if port in (None, default_port) else f"{hostname}:{port}"
            origin = f"{scheme}://{netloc}"
        return replace(self, rp_id=rp_id, origin=origin)


__all__ = [
    "ALGORITHM_MAP",
    "USER_VERIFICATION_VALUES",
    "RelyingPartyPolicy",
    "normalize_user_verification",
    "parse_algorithms",
]
