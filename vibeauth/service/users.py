from __future__ import annotations

import json
import math
import re
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from vibeauth.logging import get_logger
from vibeauth.service.audit import AuditLog
from vibeauth.service.errors import (
    SignupDisabledError,
    UserBannedError,
    UserExistsError,
    ValidationError,
)
from vibeauth.service.sessions import SessionManager
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.errors import ConstraintViolation
from vibeauth.storage.models import AuthResult, User, UserPage, to_db_time, utcnow

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")
_SORT_COLUMNS = {"created_at", "email", "name"}
_UNSET: Any = object()

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def normalize_email(email: Optional[str]) -> str:
    """Trim and lower-case; every lookup and insert goes through here."""
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("A valid email address is required", detail={"field": "email"})
    return normalized


def _escape_like(term: str) -> str:
    return term.replace("!", "!!").replace("%", "!%").replace("_", "!_")


class UserStore:
    """CRUD over ``vibekit_users``."""

    def __init__(self, db: DatabaseAdapter, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def get_by_id(self, user_id: str, *, db: Optional[DatabaseAdapter] = None) -> Optional[User]:
        row = (db or self.db).query_one("SELECT * FROM vibekit_users WHERE id = ?", (user_id,))
        return User.from_row(row) if row else None

    def get_by_email(self, email: str, *, db: Optional[DatabaseAdapter] = None) -> Optional[User]:
        row = (db or self.db).query_one(
            "SELECT * FROM vibekit_users WHERE email = ?", (normalize_email(email),)
        )
        return User.from_row(row) if row else None

    def get_by_phone(self, phone: str, *, db: Optional[DatabaseAdapter] = None) -> Optional[User]:
        row = (db or self.db).query_one(
            "SELECT * FROM vibekit_users WHERE phone = ? ORDER BY created_at LIMIT 1", (phone,)
        )
        return User.from_row(row) if row else None

    def create(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
        phone: Optional[str] = None,
        phone_verified: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        db: Optional[DatabaseAdapter] = None,
    ) -> User:
        now = self._now()
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=name,
            role=role,
            email_verified=email_verified,
            phone=phone,
            phone_verified=phone_verified,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        try:
            (db or self.db).execute(
                "INSERT INTO vibekit_users "
                "(id, email, name, role, email_verified, phone, phone_verified, metadata, "
                "banned, login_count, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)",
                (
                    user.id,
                    user.email,
                    name,
                    role,
                    int(email_verified),
                    phone,
                    int(phone_verified),
                    json.dumps(user.metadata, default=str),
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        except ConstraintViolation as exc:
            raise UserExistsError("A user with this email already exists") from exc
        logger.info("user_created", user_id=user.id)
        return user

    def record_login(self, user_id: str, *, db: Optional[DatabaseAdapter] = None) -> None:
        now = to_db_time(self._now())
        (db or self.db).execute(
            "UPDATE vibekit_users SET login_count = login_count + 1, last_login_at = ?, "
            "updated_at = ? WHERE id = ?",
            (now, now, user_id),
        )

    def mark_email_verified(self, user_id: str, *, db: Optional[DatabaseAdapter] = None) -> None:
        (db or self.db).execute(
            "UPDATE vibekit_users SET email_verified = 1, updated_at = ? WHERE id = ?",
            (to_db_time(self._now()), user_id),
        )

    def mark_phone_verified(self, user_id: str, *, db: Optional[DatabaseAdapter] = None) -> None:
        (db or self.db).execute(
            "UPDATE vibekit_users SET phone_verified = 1, updated_at = ? WHERE id = ?",
            (to_db_time(self._now()), user_id),
        )

    def update(
        self,
        user_id: str,
        *,
        name: Any = _UNSET,
        avatar_url: Any = _UNSET,
        role: Any = _UNSET,
        metadata: Any = _UNSET,
    ) -> Optional[User]:
        """Apply only the fields that were passed; returns None for unknown users."""
        assignments: List[str] = []
        params: List[Any] = []
        if name is not _UNSET:
            assignments.append("name = ?")
            params.append(name)
        if avatar_url is not _UNSET:
            assignments.append("avatar_url = ?")
            params.append(avatar_url)
        if role is not _UNSET:
            if not role:
                raise ValidationError("role must not be empty", detail={"field": "role"})
            assignments.append("role = ?")
            params.append(role)
        if metadata is not _UNSET:
            if metadata is not None and not isinstance(metadata, dict):
                raise ValidationError("metadata must be an object", detail={"field": "metadata"})
            assignments.append("metadata = ?")
            params.append(json.dumps(metadata or {}, default=str))
        if assignments:
            assignments.append("updated_at = ?")
            params.append(to_db_time(self._now()))
            params.append(user_id)
            self.db.execute(
                f"UPDATE vibekit_users SET {', '.join(assignments)} WHERE id = ?", params
            )
        return self.get_by_id(user_id)

    def set_banned(self, user_id: str, banned: bool, reason: Optional[str] = None) -> bool:
        result = self.db.execute(
            "UPDATE vibekit_users SET banned = ?, banned_reason = ?, updated_at = ? WHERE id = ?",
            (int(banned), reason if banned else None, to_db_time(self._now()), user_id),
        )
        return result.row_count > 0

    def delete(self, user_id: str) -> bool:
        result = self.db.execute("DELETE FROM vibekit_users WHERE id = ?", (user_id,))
        return result.row_count > 0

    def count(self, *, role: Optional[str] = None) -> int:
        if role:
            row = self.db.query_one(
                "SELECT COUNT(*) AS total FROM vibekit_users WHERE role = ?", (role,)
            )
        else:
            row = self.db.query_one("SELECT COUNT(*) AS total FROM vibekit_users")
        return int(row["total"]) if row else 0

    def list(
        self,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        role: Optional[str] = None,
        search: Optional[str] = None,
        order_by: str = "created_at",
        order: str = "desc",
    ) -> UserPage:
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        column = order_by if order_by in _SORT_COLUMNS else "created_at"
        direction = "ASC" if str(order).lower() == "asc" else "DESC"

        clauses: List[str] = []
        params: List[Any] = []
        if role:
            clauses.append("role = ?")
            params.append(role)
        if search and search.strip():
            pattern = f"%{_escape_like(search.strip().lower())}%"
            clauses.append(
                "(LOWER(email) LIKE ? ESCAPE '!' OR LOWER(COALESCE(name, '')) LIKE ? ESCAPE '!')"
            )
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total_row = self.db.query_one(f"SELECT COUNT(*) AS total FROM vibekit_users {where}", params)
        total = int(total_row["total"]) if total_row else 0
        result = self.db.query(
            f"SELECT * FROM vibekit_users {where} ORDER BY {column} {direction}, id ASC "
            "LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        return UserPage(
            users=[User.from_row(row) for row in result.rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )


class SignInFlow:
    """The single path every authentication method ends on.

    Applies the signup policy and the ban check, updates login statistics,
    writes the ``signup``/``login`` audit event and mints the session.
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionManager,
        audit: AuditLog,
        *,
        allow_signup: bool = True,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.audit = audit
        self.allow_signup = allow_signup

    def ensure_signup_allowed(self) -> None:
        if not self.allow_signup:
            raise SignupDisabledError("New signups are currently disabled")

    def resolve_by_email(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
        db: Optional[DatabaseAdapter] = None,
    ) -> Tuple[User, bool]:
        """Find the user for ``email`` or create one; returns ``(user, is_new)``."""
        user = self.users.get_by_email(email, db=db)
        if user is None:
            self.ensure_signup_allowed()
            try:
                return self.users.create(email, name=name, email_verified=email_verified, db=db), True
            except UserExistsError:
                # Lost a race with a concurrent first sign-in
                user = self.users.get_by_email(email, db=db)
                if user is None:
                    raise
        if email_verified and not user.email_verified:
            self.users.mark_email_verified(user.id, db=db)
            user.email_verified = True
        return user, False

    def resolve_by_phone(self, phone: str, *, db: Optional[DatabaseAdapter] = None) -> Tuple[User, bool]:
        user = self.users.get_by_phone(phone, db=db)
        if user is None:
            self.ensure_signup_allowed()
            placeholder = f"phone_{phone}@vibekit.dev"
            return (
                self.users.create(placeholder, phone=phone, phone_verified=True, db=db),
                True,
            )
        if not user.phone_verified:
            self.users.mark_phone_verified(user.id, db=db)
            user.phone_verified = True
        return user, False

    def complete(
        self,
        user: User,
        *,
        method: str,
        is_new_user: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if user.banned:
            logger.warning("banned_user_sign_in_blocked", user_id=user.id, method=method)
            raise UserBannedError(
                "Account is banned",
                detail={"reason": user.banned_reason} if user.banned_reason else None,
            )
        self.users.record_login(user.id)
        token, session = self.sessions.create(
            user.id, ip_address=ip_address, user_agent=user_agent, metadata={"method": method}
        )
        self.audit.record(
            "signup" if is_new_user else "login",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"method": method},
        )
        refreshed = self.users.get_by_id(user.id) or user
        return AuthResult(
            user=refreshed,
            token=token,
            expires_at=session.expires_at,
            session_id=session.id,
            is_new_user=is_new_user,
        )
