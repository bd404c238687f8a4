# passkeys/security_headers.py
from __future__ import annotations

"""
# Passkeys - Security Headers & CORS

Security headers and CORS for the JSON API.

## What you get
- **Headers**: HSTS, CSP (`default-src 'none'`; the API never serves
  markup), Referrer-Policy, X-Content-Type-Options, X-Frame-Options,
  COOP/CORP.
- **No-store caching** on every ceremony path (`SENSITIVE_PATH_PREFIXES`)
  plus `set_sensitive_cache()` for individual routes.
- **CORS installer**: strict allow-list from `FRONTEND_ORIGINS`.

## Env knobs
- ENABLE_HTTPS_REDIRECT (default "false"; TLS usually ends at the proxy)
- SECURITY_SKIP_PATHS (CSV; default "/docs,/openapi.json,/redoc")
- SENSITIVE_PATH_PREFIXES (CSV; default "/api/v1/passkeys")
- FRONTEND_ORIGINS (CSV; exact origins), ALLOW_ORIGINS_REGEX (single regex)
- HSTS_MAX_AGE (31536000), HSTS_INCLUDE_SUBDOMAINS ("true")
- REFERRER_POLICY (default "no-referrer")
"""

import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

from fastapi import Request, Response
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send


def _csv(value: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in (value or "").split(",") if p.strip())


# ─────────────────────────────────────────────────────────────
# ⚙️ Configuration
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class SecurityHeadersConfig:
    hsts_max_age: int = int(os.getenv("HSTS_MAX_AGE", "31536000"))
    hsts_include_subdomains: bool = os.getenv("HSTS_INCLUDE_SUBDOMAINS", "true").lower() == "true"
    csp: str = os.getenv("CSP_POLICY", "default-src 'none'; frame-ancestors 'none'")
    referrer_policy: str = os.getenv("REFERRER_POLICY", "no-referrer")
    coop: str = os.getenv("CROSS_ORIGIN_OPENER_POLICY", "same-origin")
    corp: str = os.getenv("CROSS_ORIGIN_RESOURCE_POLICY", "same-origin")
    skip_paths_csv: str = os.getenv("SECURITY_SKIP_PATHS", "/docs,/openapi.json,/redoc")
    sensitive_paths_csv: str = os.getenv("SENSITIVE_PATH_PREFIXES", "/api/v1/passkeys")


_CFG = SecurityHeadersConfig()


# ─────────────────────────────────────────────────────────────
# 🧩 Middleware
# ─────────────────────────────────────────────────────────────
class SecurityHeadersMiddleware:
    """
    ASGI middleware that applies security headers idempotently and marks
    ceremony responses `Cache-Control: no-store`.
    """

    def __init__(self, app: ASGIApp, cfg: SecurityHeadersConfig = _CFG) -> None:
        self.app = app
        self.cfg = cfg
        self._skip_prefixes = _csv(cfg.skip_paths_csv)
        self._sensitive_prefixes = _csv(cfg.sensitive_paths_csv)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        path = scope.get("path", "")
        is_skipped = any(path.startswith(p) for p in self._skip_prefixes)
        is_sensitive = any(path.startswith(p) for p in self._sensitive_prefixes)
        state = scope.setdefault("state", {})

        async def send_wrapper(message):
            if message.get("type") == "http.response.start":
                raw_headers: List[Tuple[bytes, bytes]] = message.setdefault("headers", [])  # type: ignore[assignment]
                if not is_skipped:
                    _apply_headers_to_raw(raw_headers, self.cfg)
                if is_sensitive or state.get("_sensitive_cache"):
                    _apply_sensitive_cache_to_raw(raw_headers)
            await send(message)

        await self.app(scope, receive, send_wrapper)


def _has_header(raw_headers: List[Tuple[bytes, bytes]], name: str) -> bool:
    lname = name.lower().encode("latin-1")
    return any(h[0].lower() == lname for h in raw_headers)


def _ensure(raw_headers: List[Tuple[bytes, bytes]], name: str, value: str) -> None:
    if not _has_header(raw_headers, name):
        raw_headers.append((name.encode("latin-1"), value.encode("latin-1")))


def _apply_headers_to_raw(raw_headers: List[Tuple[bytes, bytes]], cfg: SecurityHeadersConfig) -> None:
    hsts = f"max-age={cfg.hsts_max_age}"
    if cfg.hsts_include_subdomains:
        hsts += "; includeSubDomains"
    _ensure(raw_headers, "Strict-Transport-Security", hsts)
    _ensure(raw_headers, "X-Content-Type-Options", "nosniff")
    _ensure(raw_headers, "X-Frame-Options", "DENY")
    _ensure(raw_headers, "Referrer-Policy", cfg.referrer_policy)
    _ensure(raw_headers, "Cross-Origin-Opener-Policy", cfg.coop)
    _ensure(raw_headers, "Cross-Origin-Resource-Policy", cfg.corp)
    _ensure(raw_headers, "Content-Security-Policy", cfg.csp)


def _apply_sensitive_cache_to_raw(raw_headers: List[Tuple[bytes, bytes]]) -> None:
    _ensure(raw_headers, "Cache-Control", "no-store")
    _ensure(raw_headers, "Pragma", "no-cache")
    _ensure(raw_headers, "Expires", "0")


# ─────────────────────────────────────────────────────────────
# 🔓 Public helpers
# ─────────────────────────────────────────────────────────────
def set_sensitive_cache(target: Union[Response, Request]) -> None:
    """
    Mark a **Response** or **Request** as not cacheable.

    - `Response`: headers are set immediately (idempotent).
    - `Request`: sets a flag read by the middleware at response start.
    """
    if isinstance(target, Response):
        target.headers.setdefault("Cache-Control", "no-store")
        target.headers.setdefault("Pragma", "no-cache")
        target.headers.setdefault("Expires", "0")
        return
    if isinstance(target, Request):
        setattr(target.state, "_sensitive_cache", True)
        return
    raise TypeError("set_sensitive_cache expects a Response or Request")


def configure_cors(
    app,
    origins: Optional[Iterable[str]] = None,
    *,
    allow_credentials: bool = True,
) -> None:
    """Install strict CORS; `origins` defaults to `FRONTEND_ORIGINS`."""
    allowed = list(origins or _csv(os.getenv("FRONTEND_ORIGINS", "")))
    origins_regex = os.getenv("ALLOW_ORIGINS_REGEX", "").strip() or None
    if not allowed and not origins_regex:
        allowed = ["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed,
        allow_origin_regex=origins_regex,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-CSRF-Token"],
        expose_headers=["Retry-After", "X-Request-ID"],
        max_age=3600,
    )


def install_security(app) -> None:
    """HTTPS redirect (optional) and the headers middleware."""
    if os.getenv("ENABLE_HTTPS_REDIRECT", "false").lower() == "true":
        app.add_middleware(HTTPSRedirectMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, cfg=_CFG)


__all__ = [
    "SecurityHeadersConfig",
    "SecurityHeadersMiddleware",
    "install_security",
    "configure_cors",
    "set_sensitive_cache",
]
