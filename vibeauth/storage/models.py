from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Render a datetime as the fixed-width UTC string stored in every table."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "user"
    email_verified: bool = False
    phone: Optional[str] = None
    phone_verified: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    banned: bool = False
    banned_reason: Optional[str] = None
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        return cls(
            id=row["id"],
            email=row["email"],
            name=row.get("name"),
            avatar_url=row.get("avatar_url"),
            role=row.get("role") or "user",
            email_verified=bool(row.get("email_verified")),
            phone=row.get("phone"),
            phone_verified=bool(row.get("phone_verified")),
            metadata=_load_json(row.get("metadata")),
            banned=bool(row.get("banned")),
            banned_reason=row.get("banned_reason"),
            last_login_at=from_db_time(row.get("last_login_at")),
            login_count=int(row.get("login_count") or 0),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_current: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any], *, current_session_id: Optional[str] = None) -> "Session":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            expires_at=from_db_time(row["expires_at"]),
            created_at=from_db_time(row["created_at"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=_load_json(row.get("metadata")),
            is_current=current_session_id is not None and row["id"] == current_session_id,
        )


@dataclass
class AuthResult:
    """Outcome of any successful sign-in: the user plus a freshly minted session."""

    user: User
    token: str
    expires_at: datetime
    session_id: str
    is_new_user: bool = False


@dataclass
class MfaFactor:
    id: str
    user_id: str
    factor_type: str
    verified: bool
    friendly_name: Optional[str]
    created_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MfaFactor":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            factor_type=row["factor_type"],
            verified=bool(row["verified"]),
            friendly_name=row.get("friendly_name"),
            created_at=from_db_time(row["created_at"]),
        )


@dataclass
class MfaEnrollment:
    """Returned exactly once; the secret and backup codes are not retrievable later."""

    factor_id: str
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


@dataclass
class PasskeyCredential:
    id: str
    credential_id: str
    user_id: str
    public_key: str
    counter: int
    device_type: str
    backed_up: bool
    friendly_name: Optional[str]
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PasskeyCredential":
        return cls(
            id=row["id"],
            credential_id=row["credential_id"],
            user_id=row["user_id"],
            public_key=row["public_key"],
            counter=int(row["counter"] or 0),
            device_type=row["device_type"],
            backed_up=bool(row["backed_up"]),
            friendly_name=row.get("friendly_name"),
            created_at=from_db_time(row["created_at"]),
            last_used_at=from_db_time(row.get("last_used_at")),
        )


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Role":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            created_at=from_db_time(row["created_at"]),
        )


@dataclass
class Permission:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Permission":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            created_at=from_db_time(row["created_at"]),
        )


@dataclass
class AuditEvent:
    id: str
    action: str
    created_at: datetime
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=row["id"],
            action=row["action"],
            created_at=from_db_time(row["created_at"]),
            user_id=row.get("user_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=_load_json(row.get("metadata")),
        )


@dataclass
class UserPage:
    users: List[User]
    total: int
    page: int
    limit: int
    total_pages: int
