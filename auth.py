"""
Caller identity.

Authentication happens upstream (gateway or auth service). The resolved
identity reaches this API in trusted headers, which are turned into a
``CurrentUser`` here without re-verifying credentials.

The API must only be reachable through that gateway, and the gateway must
strip any client-supplied ``X-User-Id``, ``X-User-Role`` and
``X-User-Email`` headers before setting its own. Otherwise any caller can
claim ``X-User-Role: admin``.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException
from pydantic import ValidationError

from schemas import CurrentUser, Role


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User not authenticated properly")
    try:
        return CurrentUser(
            id=x_user_id,
            role=(x_user_role or Role.USER.value).lower(),
            email=x_user_email or None,
        )
    except ValidationError:
        raise HTTPException(status_code=401, detail="Invalid identity headers")


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
