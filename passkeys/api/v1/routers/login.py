# passkeys/api/v1/routers/login.py
"""
Passkeys - Login API
====================

Endpoints
---------
- POST /login/options  → assertion options + challenge token
- POST /login/verify   → verify the signed assertion through the auth chain

Outward behavior
----------------
- Every verification failure answers the same generic 401 "Authentication
  failed" after a random delay. Unknown usernames and users without passkeys
  are indistinguishable.
- A locked out (username, client) pair answers 429 with `Retry-After`.
- Store/network trouble answers 503 and never counts as a failed attempt.
- All responses are `Cache-Control: no-store` and rate limited per client IP
  (`PASSKEY_RATE_LIMIT_MAX_ATTEMPTS` per `PASSKEY_RATE_LIMIT_WINDOW_SECONDS`).
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from loguru import logger

from passkeys.core.exceptions import ErrorKind, InfrastructureError, LockedOutError, PasskeyError, to_http_exception
from passkeys.core.limiter import policy_rate_limit, rate_limit
from passkeys.dependencies.auth import get_client_id, get_services
from passkeys.dependencies.services import PasskeyServices
from passkeys.schemas.passkeys import (
    CeremonyOptionsResponse,
    LoginOptionsRequest,
    LoginVerifyRequest,
    LoginVerifyResponse,
)
from passkeys.security_headers import set_sensitive_cache
from passkeys.services.assertion import normalize_username
from passkeys.services.auth_chain import PASSKEY_PAYLOAD_TYPE, AuthOutcome, AuthVerdict, LoginAttempt

router = APIRouter(prefix="/login", tags=["Passkeys / Login"])


def _verdict_error(verdict: AuthVerdict) -> HTTPException:
    if verdict.outcome is AuthOutcome.UNAVAILABLE:
        return to_http_exception(InfrastructureError())
    if verdict.error_kind is ErrorKind.LOCKED_OUT:
        return to_http_exception(LockedOutError(retry_after=verdict.retry_after))
    return to_http_exception(PasskeyError(verdict.error_kind or ErrorKind.SIGNATURE_INVALID))


# ──────────────────────────────────────────────────────────────
# POST /login/options
# ──────────────────────────────────────────────────────────────
@router.post(
    "/options",
    response_model=CeremonyOptionsResponse,
    summary="Begin passkey login",
)
@rate_limit(policy_rate_limit)
async def login_options(
    request: Request,
    response: Response,
    payload: LoginOptionsRequest,
    services: PasskeyServices = Depends(get_services),
    client_id: str = Depends(get_client_id),
) -> CeremonyOptionsResponse:
    """
    Issue assertion options.

    With a username the options list that user's active credentials. Without
    one (discoverable login enabled) the authenticator picks the credential.
    """
    set_sensitive_cache(response)
    policy = services.policy_for(request)
    username = normalize_username(payload.username)

    if username is None and not policy.discoverable_login:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")

    try:
        await services.lockout.check_lockout(username, client_id)
        options = await services.assertion(policy).begin_assertion(username)
    except PasskeyError as exc:
        if not exc.is_infrastructure and exc.kind is not ErrorKind.LOCKED_OUT:
            logger.info("[Passkeys] login options refused | kind={}", exc.kind.value)
            await services.failure_delay()
        raise to_http_exception(exc)

    return CeremonyOptionsResponse(**options.to_dict())


# ──────────────────────────────────────────────────────────────
# POST /login/verify
# ──────────────────────────────────────────────────────────────
@router.post(
    "/verify",
    response_model=LoginVerifyResponse,
    summary="Finish passkey login",
)
@rate_limit(policy_rate_limit)
async def login_verify(
    request: Request,
    response: Response,
    payload: LoginVerifyRequest,
    services: PasskeyServices = Depends(get_services),
    client_id: str = Depends(get_client_id),
) -> LoginVerifyResponse:
    """
    Verify a signed assertion.

    The request is handed to the authentication chain exactly as a host login
    form would pass it, so lockout bookkeeping and auditing happen in one
    place. Session issuance after a successful verdict belongs to the host.
    """
    set_sensitive_cache(response)
    policy = services.policy_for(request)

    attempt = LoginAttempt(
        username=payload.username,
        password_or_payload={
            "_type": PASSKEY_PAYLOAD_TYPE,
            "assertion": payload.assertion.model_dump(exclude_none=True),
            "challengeToken": payload.challengeToken,
        },
        client_id=client_id,
    )
    verdict = await services.auth_chain(policy).authenticate(attempt)

    if verdict.authenticated and verdict.user_ref is not None:
        return LoginVerifyResponse(userRef=verdict.user_ref)

    if verdict.outcome is AuthOutcome.FAILED and verdict.error_kind is not ErrorKind.LOCKED_OUT:
        await services.failure_delay()
    raise _verdict_error(verdict)


__all__ = ["router"]
