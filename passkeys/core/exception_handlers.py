from __future__ import annotations

"""
Problem+JSON exception handlers (RFC 7807).

`passkeys.main.create_app` installs these. Every error leaves the service as
`application/problem+json`; a `PasskeyError` that escaped a route is
collapsed to its outward shape first, and anything unexpected hides
internals behind a 500.
"""

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from passkeys.core.exceptions import PasskeyError, to_http_exception


def _problem(title: str, detail: str, status_code: int, request: Request, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "type": "about:blank",
            "title": title,
            "detail": detail,
            "status": status_code,
            "instance": request.url.path,
            "request_id": getattr(request.state, "request_id", None),
        },
        media_type="application/problem+json",
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:  # type: ignore
    title = exc.__class__.__name__.replace("Exception", "").strip() or "Error"
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _problem(title, detail, exc.status_code, request, headers=getattr(exc, "headers", None))


async def passkey_exception_handler(request: Request, exc: PasskeyError) -> JSONResponse:  # type: ignore
    logger.info("[Passkey] unhandled core failure reached HTTP layer | kind={}", exc.kind.value)
    http_exc = to_http_exception(exc)
    return _problem("Passkey", http_exc.message, http_exc.status_code, request, headers=http_exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore
    detail = "Validation error"
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "type": "about:blank",
            "title": detail,
            "detail": detail,
            "status": status.HTTP_422_UNPROCESSABLE_ENTITY,
            "instance": request.url.path,
            # field locations only; input values may contain assertion material
            "errors": [{"loc": list(e.get("loc", ())), "type": e.get("type")} for e in exc.errors()],
        },
        media_type="application/problem+json",
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore
    logger.opt(exception=exc).error("Unhandled exception on {}", request.url.path)
    return _problem("Internal Server Error", "An unexpected error occurred.", status.HTTP_500_INTERNAL_SERVER_ERROR, request)


__all__ = [
    "http_exception_handler",
    "passkey_exception_handler",
    "validation_exception_handler",
    "global_exception_handler",
]
