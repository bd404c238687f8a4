"""
Passkeys • API v1 Router Aggregator
===================================

Exports the combined `router` and each sub-router so hosts can mount only
the parts they want (for example login without the admin surface).

Layout
------
    /passkeys/login/...    public ceremony endpoints
    /passkeys/manage/...   the authenticated user's own passkeys
    /passkeys/admin/...    admin operations

Quick usage
-----------
    from passkeys.api.v1.routers import router as v1_router
    app.include_router(v1_router, prefix="/api/v1")

Auth, rate limits and no-store caching live in the child routers.
"""

from fastapi import APIRouter

from .admin import router as admin_router
from .login import router as login_router
from .manage import router as manage_router

PASSKEYS_PREFIX = "/passkeys"


def build_v1_router(prefix: str = PASSKEYS_PREFIX) -> APIRouter:
    """Compose login, manage and admin routers under `prefix`."""
    r = APIRouter(prefix=prefix)
    r.include_router(login_router)
    r.include_router(manage_router)
    r.include_router(admin_router)
    return r


router = build_v1_router()


__all__ = [
    "router",
    "build_v1_router",
    "login_router",
    "manage_router",
    "admin_router",
]
