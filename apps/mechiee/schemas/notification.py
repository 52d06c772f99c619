from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from mechiee.schemas.chat import UserRole


class NotificationEvent(BaseModel):
    """A notification addressed to one user identity or to a whole role group."""

    type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    role: Optional[UserRole] = None

    @model_validator(mode="after")
    def _require_target(self) -> "NotificationEvent":
        if not self.user_id and self.role is None:
            raise ValueError("notification needs a user_id or a role")
        return self


class NotificationRecord(BaseModel):
    id: str
    user: Optional[str] = None
    role: Optional[UserRole] = None
    type: str
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime
