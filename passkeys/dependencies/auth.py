# passkeys/dependencies/auth.py
from __future__ import annotations

"""
Request-scoped dependencies
---------------------------
- get_services(request): the `PasskeyServices` container on `app.state`
- get_current_user(request): the host-authenticated `UserRecord` from
  `request.state.user` (401 when absent). Hosts either set the attribute
  in their own middleware or override this dependency.
- require_admin(user): 403 unless `user.is_admin`
- get_client_id(request): client IP used for lockout keys
"""

from fastapi import Depends, HTTPException, Request, status

from passkeys.core.limiter import client_ip
from passkeys.dependencies.services import PasskeyServices
from passkeys.domain import UserRecord


def get_services(request: Request) -> PasskeyServices:
    services = getattr(request.app.state, "passkeys", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Passkey services not configured")
    return services


async def get_current_user(request: Request) -> UserRecord:
    user = getattr(request.state, "user", None)
    if not isinstance(user, UserRecord):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


async def require_admin(user: UserRecord = Depends(get_current_user)) -> UserRecord:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    return user


def get_client_id(request: Request) -> str:
    return client_ip(request)


__all__ = ["get_services", "get_current_user", "require_admin", "get_client_id"]
