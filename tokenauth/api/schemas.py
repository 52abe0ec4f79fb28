from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from tokenauth.storage.models import User


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    """Common response envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserResponse(BaseModel):
    id: int
    username: str
    name: str
    avatar: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            name=user.name,
            avatar=user.avatar,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class LogoutResponse(BaseModel):
    logged_out: bool = True


class HealthResponse(BaseModel):
    store: str
