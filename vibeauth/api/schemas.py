from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from vibeauth.storage.models import AuthResult, Session, User

_GENERIC_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})
_AUTH_ERROR_CODE = re.compile(r"^AUTH_[A-Z0-9_]+$")


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a generic code or an ``AUTH_*`` code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _GENERIC_ERROR_CODES and not _AUTH_ERROR_CODE.match(value):
            raise ValueError(
                f"Invalid error code '{value}'. Must be AUTH_* or one of: "
                f"{', '.join(sorted(_GENERIC_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str
    email_verified: bool
    phone: Optional[str] = None
    phone_verified: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    banned: bool
    last_login_at: Optional[datetime] = None
    login_count: int
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            avatar_url=user.avatar_url,
            role=user.role,
            email_verified=user.email_verified,
            phone=user.phone,
            phone_verified=user.phone_verified,
            metadata=user.metadata,
            banned=user.banned,
            last_login_at=user.last_login_at,
            login_count=user.login_count,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            is_current=session.is_current,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    expires_at: datetime
    is_new_user: bool = False

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            user=UserResponse.from_user(result.user),
            token=result.token,
            expires_at=result.expires_at,
            is_new_user=result.is_new_user,
        )
