"""
Request identity and role-based permission checks.

Identity comes from the X-User-Id / X-User-Role headers set by the
gateway in front of the service; allowed actions per role come from the
permissions section of finance_config.yaml.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel

from buildledger.config import get_config
from buildledger.domain.exceptions import PermissionDeniedError


class CurrentUser(BaseModel):
    id: str
    role: str


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CurrentUser:
    """Resolve the caller from request headers."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return CurrentUser(id=x_user_id, role=(x_user_role or "").upper())


def has_permission(role: Optional[str], action: str) -> bool:
    if not role:
        return False
    return action in get_config().get_role_actions(role)


def require_permission(action: str):
    """Dependency factory: the caller's role must allow the action."""

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_permission(user.role, action):
            error = PermissionDeniedError(user.id, action.replace("_", " "))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": error.code, "message": error.message},
            )
        return user

    return dependency
