# passkeys/core/encoding.py
from __future__ import annotations

"""URL-safe base64 without padding, the encoding WebAuthn uses on the wire."""

from fido2.utils import websafe_decode, websafe_encode


def b64url(data: bytes) -> str:
    return websafe_encode(data)


def b64url_decode(s: str) -> bytes:
    if not isinstance(s, str):
        raise ValueError("expected base64url string")
    return websafe_decode(s)


__all__ = ["b64url", "b64url_decode"]
