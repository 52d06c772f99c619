"""Shared API dependencies."""

from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import ValidationError as PydanticValidationError

from mechiee.schemas.chat import Caller, UserRole


def get_caller(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Caller:
    """Identity of the authenticated caller.

    Authentication happens upstream (gateway/proxy); it forwards the resolved
    identity in these headers.
    """
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
    try:
        return Caller(user_id=x_user_id.strip(), role=x_user_role.strip().lower())
    except PydanticValidationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid caller identity") from exc


def require_role(*roles: UserRole) -> Callable[[Caller], Caller]:
    allowed = set(roles)

    def _dependency(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        return caller

    return _dependency
