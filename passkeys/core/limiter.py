from __future__ import annotations

"""
Passkeys - HTTP Rate Limiting (SlowAPI)
=======================================

Coarse per-IP throttling in front of the ceremony endpoints. The per-user
failure counting and lockout live in `passkeys.services.lockout`; this layer
only stops floods before they reach the stores.

Highlights
----------
- **IP aware** keying (XFF/X-Real-IP/client.host).
- **Policy driven** limits: `install_rate_limiter` keeps the app's
  `rate_limit_max_attempts` per `rate_limit_window_seconds` on `app.state`
  and `policy_rate_limit()` reads it for the request being served.
- **Test/CI friendly**:
    - `RATE_LIMIT_NAMESPACE`: prefixes keys so parallel runs don't collide.
    - `RATE_LIMIT_TEST_BYPASS`: disables limits when truthy.

Environment
-----------
RATE_LIMIT_ENABLED           default: "true"
DEFAULT_RATE_LIMIT           default: "100/minute"
RATELIMIT_STORAGE_URI        default: "" (falls back to "memory://")
RATELIMIT_STRATEGY           default: "moving-window"
RATE_LIMIT_SKIP_PATHS        default: "/healthz,/readyz,/docs,/openapi.json"
RATE_LIMIT_NAMESPACE         default: ""
RATE_LIMIT_TEST_BYPASS       default: ""

Usage
-----
    from passkeys.core.limiter import install_rate_limiter, rate_limit, policy_rate_limit

    @router.post("/login/options")
    @rate_limit(policy_rate_limit)
    async def login_options(request: Request, response: Response): ...
"""

import os
from contextvars import ContextVar
from typing import Callable, List, Optional, Union

from dotenv import load_dotenv
from loguru import logger
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

# ──────────────────────────────────────────────────────────────
# ⚙️ Environment & defaults
# ──────────────────────────────────────────────────────────────
load_dotenv()

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
DEFAULT_LIMIT = os.getenv("DEFAULT_RATE_LIMIT", "100/minute").strip()
STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "").strip()
STRATEGY = os.getenv("RATELIMIT_STRATEGY", "moving-window").strip()

SKIP_PATHS: List[str] = [
    p.strip()
    for p in os.getenv("RATE_LIMIT_SKIP_PATHS", "/healthz,/readyz,/docs,/openapi.json").split(",")
    if p.strip()
]

NAMESPACE = os.getenv("RATE_LIMIT_NAMESPACE", "").strip()

_TRUTHY = {"1", "true", "yes", "on"}

# Limit of the app serving the current request; bound by `PolicyLimitMiddleware`.
_request_limit: ContextVar[str] = ContextVar("passkey_rate_limit", default=DEFAULT_LIMIT)


# ──────────────────────────────────────────────────────────────
# 🧠 Keying & exemptions
# ──────────────────────────────────────────────────────────────
def client_ip(request: Request) -> str:
    """
    Best-effort client IP:
    1) X-Forwarded-For (first hop)
    2) X-Real-IP
    3) ASGI client.host
    """
    xff = request.headers.get("x-forwarded-for")
    if xff:
        ip = xff.split(",")[0].strip()
        if ip:
            return ip
    xri = request.headers.get("x-real-ip")
    if xri:
        return xri.strip()
    return get_remote_address(request) or "unknown"


def _with_namespace(key: str) -> str:
    return f"{NAMESPACE}:{key}" if NAMESPACE else key


def get_rate_limit_key(request: Request) -> str:
    return _with_namespace(f"ip:{client_ip(request)}")


def _path_is_skipped(path: str) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in SKIP_PATHS)


def should_exempt_request(request: Optional[Request]) -> bool:
    """
    Exempt a request when the global switch is off, the path is skipped, or
    the test bypass is enabled.
    """
    # Re-evaluate env flags at request time so tests can toggle them.
    if os.getenv("RATE_LIMIT_ENABLED", "true").strip().lower() != "true":
        return True
    if os.getenv("RATE_LIMIT_TEST_BYPASS", "").strip().lower() in _TRUTHY:
        return True
    if request is None:
        return False
    return _path_is_skipped(request.url.path)


# ──────────────────────────────────────────────────────────────
# 🧰 Limiter instance
# ──────────────────────────────────────────────────────────────
def _build_default_limits() -> List[str]:
    return [chunk.strip() for chunk in DEFAULT_LIMIT.split(",") if chunk.strip()]


limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=_build_default_limits(),
    headers_enabled=False,
    storage_uri=STORAGE_URI or "memory://",
    strategy=STRATEGY,
)


# ──────────────────────────────────────────────────────────────
# 🎛 Decorators
# ──────────────────────────────────────────────────────────────
def policy_rate_limit() -> str:
    """Policy limit of the app serving this request, e.g. `"10/300 seconds"`."""
    return _request_limit.get()


def _exempt_when() -> bool:
    """SlowAPI calls this without the request; only the env switches apply."""
    return should_exempt_request(None)


def rate_limit(*limits: Union[str, Callable[[], str]]) -> Callable:
    """
    Apply per-route limits.

    Examples
    --------
    @rate_limit("10/minute")
    @rate_limit(policy_rate_limit)
    """
    selected = list(limits) if limits else _build_default_limits()
    decorators = [limiter.limit(value, exempt_when=_exempt_when) for value in selected]

    def _apply(fn: Callable) -> Callable:
        for deco in reversed(decorators):
            fn = deco(fn)
        return fn
    return _apply


def rate_limit_exempt() -> Callable:
    """Explicitly exempt a route from limiting (health probes)."""
    return limiter.exempt


# ──────────────────────────────────────────────────────────────
# 🔧 Installer
# ──────────────────────────────────────────────────────────────
class PolicyLimitMiddleware:
    """Binds the app's policy limit for the duration of each request."""

    def __init__(self, app: ASGIApp, limit: str) -> None:
        self.app = app
        self.limit = limit

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        token = _request_limit.set(self.limit)
        try:
            await self.app(scope, receive, send)
        finally:
            _request_limit.reset(token)


def install_rate_limiter(app, *, max_attempts: int, window_seconds: int) -> None:
    """Attach SlowAPI middleware; the policy limit is kept on `app.state`."""
    policy_limit = f"{int(max_attempts)}/{int(window_seconds)} seconds"
    app.state.limiter = limiter
    app.state.passkey_rate_limit = policy_limit

    if RATE_LIMIT_ENABLED:
        app.add_middleware(SlowAPIMiddleware)
    else:
        logger.info("RateLimiter disabled by env; middleware not installed")
    # outermost of the two so SlowAPI evaluates limits with this app's value bound
    app.add_middleware(PolicyLimitMiddleware, limit=policy_limit)
    if RATE_LIMIT_ENABLED:
        logger.info("✅ SlowAPI middleware installed | policy_limit={} | storage={}", policy_limit, STORAGE_URI or "memory://")


__all__ = [
    "limiter",
    "client_ip",
    "rate_limit",
    "policy_rate_limit",
    "rate_limit_exempt",
    "install_rate_limiter",
    "PolicyLimitMiddleware",
    "should_exempt_request",
]
