# passkeys/api/v1/routers/manage.py
"""
Passkeys - Self-service Management API
======================================

Endpoints (authenticated user)
------------------------------
- POST /manage/registration/options  → begin adding a passkey
- POST /manage/registration/verify   → finish adding a passkey
- GET  /manage/list                  → own active passkeys
- POST /manage/rename                → change a passkey label
- POST /manage/remove                → revoke one of the own passkeys

Notes
-----
- The current user comes from the host (`get_current_user`).
- Passkeys belonging to someone else answer 404, never 403.
- Removing the last active passkey is refused (409) while the user cannot
  fall back to a password.
- Credential public keys and sign counters are never returned here.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from loguru import logger

from passkeys.core.exceptions import PasskeyError, to_http_exception
from passkeys.dependencies.auth import get_current_user, get_services
from passkeys.dependencies.services import PasskeyServices
from passkeys.domain import Credential, UserRecord, sanitize_label
from passkeys.schemas.passkeys import (
    CeremonyOptionsResponse,
    CredentialListResponse,
    RegistrationVerifyRequest,
    RegistrationVerifyResponse,
    RemoveRequest,
    RenameRequest,
    StatusResponse,
)
from passkeys.security_headers import set_sensitive_cache
from passkeys.services.audit_log_service import AuditEvent, log_audit_event

router = APIRouter(prefix="/manage", tags=["Passkeys / Manage"])


async def _own_credential(services: PasskeyServices, user: UserRecord, uid: int) -> Credential:
    credential = await services.credentials.find_by_uid(uid)
    if credential is None or credential.user_ref != user.user_ref:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")
    return credential


# ──────────────────────────────────────────────────────────────
# Registration
# ──────────────────────────────────────────────────────────────
@router.post(
    "/registration/options",
    response_model=CeremonyOptionsResponse,
    summary="Begin passkey registration",
)
async def registration_options(
    request: Request,
    response: Response,
    services: PasskeyServices = Depends(get_services),
    user: UserRecord = Depends(get_current_user),
) -> CeremonyOptionsResponse:
    set_sensitive_cache(response)
    options = await services.registration(services.policy_for(request)).begin_registration(user)
    return CeremonyOptionsResponse(**options.to_dict())


@router.post(
    "/registration/verify",
    response_model=RegistrationVerifyResponse,
    summary="Finish passkey registration",
)
async def registration_verify(
    request: Request,
    response: Response,
    payload: RegistrationVerifyRequest,
    services: PasskeyServices = Depends(get_services),
    user: UserRecord = Depends(get_current_user),
) -> RegistrationVerifyResponse:
    """
    Verify the attestation and store the new passkey.

    Any verification failure is a plain 400 "Registration failed"; the
    precise kind only goes to the log.
    """
    set_sensitive_cache(response)
    ceremony = services.registration(services.policy_for(request))
    try:
        credential = await ceremony.complete_registration(
            payload.credential.model_dump(exclude_none=True),
            payload.challengeToken,
            user,
            label=payload.label,
        )
    except PasskeyError as exc:
        if exc.is_infrastructure:
            raise to_http_exception(exc)
        logger.info("[Passkeys] registration rejected | user_ref={} kind={}", user.user_ref, exc.kind.value)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Registration failed")

    return RegistrationVerifyResponse(credential=credential.to_info())


# ──────────────────────────────────────────────────────────────
# Listing / labels / removal
# ──────────────────────────────────────────────────────────────
@router.get("/list", response_model=CredentialListResponse, summary="List own passkeys")
async def list_credentials(
    response: Response,
    services: PasskeyServices = Depends(get_services),
    user: UserRecord = Depends(get_current_user),
) -> CredentialListResponse:
    set_sensitive_cache(response)
    active = await services.credentials.find_all_for_user(user.user_ref, include_revoked=False)
    return CredentialListResponse(credentials=[c.to_info() for c in active], count=len(active))


@router.post("/rename", response_model=StatusResponse, summary="Rename an own passkey")
async def rename_credential(
    response: Response,
    payload: RenameRequest,
    services: PasskeyServices = Depends(get_services),
    user: UserRecord = Depends(get_current_user),
) -> StatusResponse:
    set_sensitive_cache(response)
    credential = await _own_credential(services, user, payload.uid)
    if credential.is_revoked:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")

    label = sanitize_label(payload.label)
    await services.credentials.rename(credential.uid, label)
    log_audit_event(
        AuditEvent.PASSKEY_RENAMED,
        username=user.username,
        user_ref=user.user_ref,
        meta_data={"uid": credential.uid},
        hash_usernames=services.policy.hash_usernames,
    )
    return StatusResponse()


@router.post("/remove", response_model=StatusResponse, summary="Revoke an own passkey")
async def remove_credential(
    response: Response,
    payload: RemoveRequest,
    services: PasskeyServices = Depends(get_services),
    user: UserRecord = Depends(get_current_user),
) -> StatusResponse:
    set_sensitive_cache(response)
    credential = await _own_credential(services, user, payload.uid)
    if credential.is_revoked:
        return StatusResponse()

    password_disabled = services.policy.disable_password_login or not user.password_login_enabled
    if password_disabled:
        # count and revoke in one step; two concurrent removals can't both pass
        if not await services.credentials.revoke_unless_last(credential.uid, user.user_ref, user.user_ref):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot remove the last passkey while password login is disabled",
            )
    else:
        await services.credentials.revoke(credential.uid, user.user_ref)
    log_audit_event(
        AuditEvent.PASSKEY_REVOKED,
        username=user.username,
        user_ref=user.user_ref,
        meta_data={"uid": credential.uid, "actor_ref": user.user_ref},
        hash_usernames=services.policy.hash_usernames,
    )
    return StatusResponse()


__all__ = ["router"]
