# passkeys/api/v1/routers/admin.py
"""
Passkeys - Admin API
====================

Endpoints (admin only)
----------------------
- GET  /admin/list?userRef=   → every passkey of a user, revoked ones included
- POST /admin/revoke          → revoke one passkey of a user
- POST /admin/revoke-all      → revoke every active passkey of a user
- POST /admin/unlock          → clear lockout state for a username
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from loguru import logger

from passkeys.dependencies.auth import get_services, require_admin
from passkeys.dependencies.services import PasskeyServices
from passkeys.domain import UserRecord
from passkeys.schemas.passkeys import (
    AdminCredentialListResponse,
    AdminRevokeAllRequest,
    AdminRevokeAllResponse,
    AdminRevokeRequest,
    AdminUnlockRequest,
    AdminUnlockResponse,
    StatusResponse,
)
from passkeys.security_headers import set_sensitive_cache
from passkeys.services.audit_log_service import AuditEvent, log_audit_event

router = APIRouter(prefix="/admin", tags=["Passkeys / Admin"])


def _audit_revoke(services: PasskeyServices, admin: UserRecord, user_ref: int, uids) -> None:
    log_audit_event(
        AuditEvent.PASSKEY_REVOKED,
        username=admin.username,
        user_ref=user_ref,
        meta_data={"uids": list(uids), "actor_ref": admin.user_ref},
        hash_usernames=services.policy.hash_usernames,
    )


@router.get("/list", response_model=AdminCredentialListResponse, summary="List a user's passkeys")
async def admin_list(
    response: Response,
    userRef: int = Query(...),
    services: PasskeyServices = Depends(get_services),
    admin: UserRecord = Depends(require_admin),
) -> AdminCredentialListResponse:
    set_sensitive_cache(response)
    credentials = await services.credentials.find_all_for_user(userRef, include_revoked=True)
    return AdminCredentialListResponse(
        userRef=userRef,
        credentials=[c.to_admin_info() for c in credentials],
        count=len(credentials),
    )


@router.post("/revoke", response_model=StatusResponse, summary="Revoke one passkey")
async def admin_revoke(
    response: Response,
    payload: AdminRevokeRequest,
    services: PasskeyServices = Depends(get_services),
    admin: UserRecord = Depends(require_admin),
) -> StatusResponse:
    set_sensitive_cache(response)
    credential = await services.credentials.find_by_uid(payload.uid)
    if credential is None or credential.user_ref != payload.userRef:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credential not found")

    if not credential.is_revoked:
        await services.credentials.revoke(credential.uid, admin.user_ref)
        _audit_revoke(services, admin, payload.userRef, [credential.uid])
    return StatusResponse()


@router.post("/revoke-all", response_model=AdminRevokeAllResponse, summary="Revoke all passkeys of a user")
async def admin_revoke_all(
    response: Response,
    payload: AdminRevokeAllRequest,
    services: PasskeyServices = Depends(get_services),
    admin: UserRecord = Depends(require_admin),
) -> AdminRevokeAllResponse:
    set_sensitive_cache(response)
    active = await services.credentials.find_all_for_user(payload.userRef, include_revoked=False)
    for credential in active:
        await services.credentials.revoke(credential.uid, admin.user_ref)
    if active:
        _audit_revoke(services, admin, payload.userRef, [c.uid for c in active])
    logger.info("[Passkeys] admin revoked all passkeys | user_ref={} count={}", payload.userRef, len(active))
    return AdminRevokeAllResponse(revokedCount=len(active))


@router.post("/unlock", response_model=AdminUnlockResponse, summary="Clear lockout state")
async def admin_unlock(
    response: Response,
    payload: AdminUnlockRequest,
    services: PasskeyServices = Depends(get_services),
    admin: UserRecord = Depends(require_admin),
) -> AdminUnlockResponse:
    """
    Remove failure history and lockouts of a username for every client.

    `username` defaults to the directory entry of `userRef`.
    """
    set_sensitive_cache(response)
    username = payload.username
    if not username:
        user = await services.users.get_by_ref(payload.userRef)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        username = user.username

    cleared = await services.lockout.reset_lockout(username)
    log_audit_event(
        AuditEvent.LOCKOUT_RESET,
        username=username.strip().lower(),
        user_ref=payload.userRef,
        meta_data={"cleared_keys": cleared, "actor_ref": admin.user_ref},
        hash_usernames=services.policy.hash_usernames,
    )
    return AdminUnlockResponse(clearedKeys=cleared)


__all__ = ["router"]
