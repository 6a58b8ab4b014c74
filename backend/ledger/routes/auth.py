"""Ledger route dependencies: bearer-token user and admin checks."""

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel
from typing import Optional

from auth import decode_access_token, is_admin, token_user_id


class CurrentUser(BaseModel):
    user_id: str
    email: Optional[str] = None
    user_type: str = "user"


async def get_current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    """Dependency to get the current user from the bearer token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization format")

    payload = decode_access_token(authorization[7:])
    if not payload or not token_user_id(payload):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return CurrentUser(
        user_id=str(token_user_id(payload)),
        email=payload.get("email"),
        user_type=payload.get("user_type") or "user",
    )


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not is_admin(user.user_type):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
