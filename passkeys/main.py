# passkeys/main.py

"""
# Passkeys RP - Application Entrypoint (FastAPI)

ASGI application factory and lifecycle for the WebAuthn relying party.

## Design Goals
- Deterministic, testable **app factory** (`create_app`) with explicit lifespan.
- Backends chosen once from settings and injected through
  `app.state.passkeys`; tests pass their own `PasskeyServices`.
- Safe, explicit **middleware order**:
  1) request id → 2) security headers/HTTPS → 3) CORS → 4) rate limits →
  5) strip `Server` header.
- Centralized problem+json exception handling.

## Probes
- `/healthz` - liveness (process up).
- `/readyz` - readiness (Redis/DB checks for the backends in use).
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, Response

# -- Logging bootstrap (Loguru + stdlib intercept) ----------------------------
from passkeys.core import logger as _logsetup  # noqa: F401
from passkeys.api.v1.routers import router as api_v1_router
from passkeys.core.config import Settings, get_settings
from passkeys.core.exception_handlers import (
    global_exception_handler,
    http_exception_handler,
    passkey_exception_handler,
    validation_exception_handler,
)
from passkeys.core.exceptions import PasskeyError
from passkeys.core.limiter import install_rate_limiter, rate_limit_exempt
from passkeys.dependencies.services import PasskeyServices, build_services
from passkeys.middleware.request_id import RequestIDMiddleware
from passkeys.security_headers import configure_cors, install_security


# ─────────────────────────────────────────────────────────────────────────────
# 🔄 Lifespan: startup & shutdown
# ─────────────────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: connect Redis when a Redis store is configured (non-fatal).
    Shutdown: close Redis and dispose the DB engine.
    """
    services: PasskeyServices = app.state.passkeys
    logger.info("✅ Passkeys RP starting up")
    await services.startup()
    try:
        yield
    finally:
        await services.shutdown()
        logger.info("🛑 Passkeys RP shutting down")


# ─────────────────────────────────────────────────────────────────────────────
# 🏗️ App factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(settings: Optional[Settings] = None, services: Optional[PasskeyServices] = None) -> FastAPI:
    """
    Build and configure the FastAPI app instance.

    Args:
        settings: defaults to the cached environment settings.
        services: prebuilt service container; built from `settings` otherwise.
    """
    settings = settings or get_settings()
    services = services or build_services(settings)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url="/docs" if settings.ENABLE_DOCS else None,
        redoc_url="/redoc" if settings.ENABLE_DOCS else None,
        openapi_url="/openapi.json" if settings.ENABLE_DOCS else None,
        lifespan=lifespan,
    )
    app.state.passkeys = services

    # ── Middlewares (order matters) ─────────────────────────────────────────
    app.add_middleware(RequestIDMiddleware)
    install_security(app)
    configure_cors(app, settings.frontend_origins_list or None)
    install_rate_limiter(
        app,
        max_attempts=services.policy.rate_limit_max_attempts,
        window_seconds=services.policy.rate_limit_window_seconds,
    )
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.middleware("http")
    async def _strip_server_header(request: Request, call_next: Callable) -> Response:
        """Remove the `Server` header to avoid leaking implementation details."""
        response: Response = await call_next(request)
        if "server" in response.headers:
            del response.headers["server"]
        return response

    # ── Exception handlers ──────────────────────────────────────────────────
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PasskeyError, passkey_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]

    # ── Routers (versioned API) ─────────────────────────────────────────────
    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    # ── Meta endpoints ──────────────────────────────────────────────────────
    @app.get("/healthz", tags=["meta"])
    @rate_limit_exempt()
    async def healthz(request: Request) -> Dict[str, bool]:
        """Liveness probe. No external checks."""
        return {"ok": True}

    @app.get("/readyz", tags=["meta"])
    @rate_limit_exempt()
    async def readyz(request: Request) -> JSONResponse:
        """Readiness probe: per-backend booleans and an aggregated `ready` flag."""
        checks = await request.app.state.passkeys.readiness()
        ready = all(checks.values())
        return JSONResponse({"ready": ready, "checks": checks}, status_code=200 if ready else 503)

    logger.info(
        "Passkeys RP configured | challenges={} lockout={} credentials={}",
        settings.CHALLENGE_STORE_BACKEND,
        settings.LOCKOUT_STORE_BACKEND,
        settings.CREDENTIAL_REPOSITORY_BACKEND,
    )
    return app


# ─────────────────────────────────────────────────────────────────────────────
# 🚀 Module-level ASGI app for Uvicorn/Gunicorn
# ─────────────────────────────────────────────────────────────────────────────
app = create_app()
__all__ = ["create_app", "app"]


# Local dev runner (prefer: `uvicorn passkeys.main:app --reload`)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "passkeys.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "1") == "1",
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
