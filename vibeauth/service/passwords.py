from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from vibeauth.logging import get_logger, hash_identifier
from vibeauth.service.audit import AuditLog
from vibeauth.service.delivery import (
    TEMPLATE_PASSWORD_RESET,
    Delivery,
    DeliveryMessage,
    deliver,
)
from vibeauth.service.errors import (
    InvalidCredentialsError,
    ResetTokenExpiredError,
    ResetTokenInvalidError,
    UserExistsError,
    WeakPasswordError,
)
from vibeauth.service.sessions import SessionManager
from vibeauth.service.users import SignInFlow, normalize_email
from vibeauth.storage.adapter import DatabaseAdapter, run_in_transaction
from vibeauth.storage.models import AuthResult, User, from_db_time, to_db_time, utcnow

logger = get_logger(__name__)

PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 64
SALT_BYTES = 32
MIN_PASSWORD_LENGTH = 8
RESET_TTL = timedelta(hours=1)

# Used to burn the same derivation time when the account does not exist
_DUMMY_SALT = "0" * (SALT_BYTES * 2)


def new_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def hash_password(password: str, salt: str) -> str:
    """PBKDF2-HMAC-SHA512, 100k iterations, 64-byte key, hex output.

    The salt is the hex string itself, used as UTF-8 bytes.
    """
    return hashlib.pbkdf2_hmac(
        "sha512", password.encode(), salt.encode(), PBKDF2_ITERATIONS, dklen=KEY_LENGTH
    ).hex()


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password, salt), expected_hash)


def _check_strength(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPasswordError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"min_length": MIN_PASSWORD_LENGTH},
        )
    return password


@dataclass
class PasswordResetRequested:
    expires_at: datetime


class PasswordService:
    """Email + password accounts, password changes and reset tokens."""

    def __init__(
        self,
        db: DatabaseAdapter,
        flow: SignInFlow,
        sessions: SessionManager,
        audit: AuditLog,
        *,
        delivery: Optional[Delivery] = None,
        app_base_url: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.flow = flow
        self.sessions = sessions
        self.audit = audit
        self.delivery = delivery
        self.app_base_url = (app_base_url or "").rstrip("/")
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _save_credential(self, user_id: str, password: str, *, db: Optional[DatabaseAdapter] = None) -> None:
        """Insert or replace the credential with a freshly salted hash."""
        target = db or self.db
        salt = new_salt()
        digest = hash_password(password, salt)
        now = to_db_time(self._now())
        updated = target.execute(
            "UPDATE vibekit_user_passwords SET password_hash = ?, salt = ?, updated_at = ? "
            "WHERE user_id = ?",
            (digest, salt, now, user_id),
        )
        if updated.row_count == 0:
            target.execute(
                "INSERT INTO vibekit_user_passwords "
                "(id, user_id, password_hash, salt, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (str(uuid.uuid4()), user_id, digest, salt, now, now),
            )

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        _check_strength(password)
        normalized = normalize_email(email)
        if self.flow.users.get_by_email(normalized) is not None:
            raise UserExistsError("A user with this email already exists")
        self.flow.ensure_signup_allowed()

        def _create(tx: DatabaseAdapter):
            user = self.flow.users.create(normalized, name=name, db=tx)
            self._save_credential(user.id, password, db=tx)
            return user

        user = run_in_transaction(self.db, _create)
        return self.flow.complete(
            user,
            method="password",
            is_new_user=True,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def admin_create_user(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        """Operator-created account: skips the sign-up policy and issues no session."""
        _check_strength(password)
        normalized = normalize_email(email)
        if self.flow.users.get_by_email(normalized) is not None:
            raise UserExistsError("A user with this email already exists")

        def _create(tx: DatabaseAdapter):
            user = self.flow.users.create(normalized, name=name, role=role, email_verified=True, db=tx)
            self._save_credential(user.id, password, db=tx)
            return user

        user = run_in_transaction(self.db, _create)
        self.audit.record("signup", user_id=user.id, metadata={"method": "admin"})
        logger.info("admin_user_created", user_id=user.id, role=role)
        return user

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Authenticate with email and password.

        Unknown email, missing credential and wrong password all fail with the
        same message, and each path runs one key derivation.
        """
        normalized = normalize_email(email)
        user = self.flow.users.get_by_email(normalized)
        record = None
        if user is not None:
            record = self.db.query_one(
                "SELECT password_hash, salt FROM vibekit_user_passwords WHERE user_id = ?",
                (user.id,),
            )
        if user is None or record is None:
            hash_password(password or "", _DUMMY_SALT)
            logger.info("password_sign_in_failed", email_hash=hash_identifier(normalized))
            raise InvalidCredentialsError("Invalid email or password")
        if not verify_password(password or "", record["salt"], record["password_hash"]):
            logger.info("password_sign_in_failed", user_id=user.id)
            raise InvalidCredentialsError("Invalid email or password")
        return self.flow.complete(
            user,
            method="password",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> int:
        """Rotate the credential and revoke the user's other sessions.

        Returns the number of sessions revoked.
        """
        _check_strength(new_password)
        record = self.db.query_one(
            "SELECT password_hash, salt FROM vibekit_user_passwords WHERE user_id = ?",
            (user_id,),
        )
        if record is None or not verify_password(
            current_password or "", record["salt"], record["password_hash"]
        ):
            raise InvalidCredentialsError("Current password is incorrect")
        self._save_credential(user_id, new_password)
        revoked = self.sessions.revoke_all(user_id, except_session_id=keep_session_id)
        self.audit.record("password_change", user_id=user_id, metadata={"sessions_revoked": revoked})
        return revoked

    async def request_reset(self, email: str) -> PasswordResetRequested:
        """Issue a reset token; the result is identical whether or not the account exists."""
        normalized = normalize_email(email)
        token = secrets.token_urlsafe(32)
        now = self._now()
        expires_at = now + RESET_TTL
        self.db.execute(
            "INSERT INTO vibekit_password_resets (id, email, token_hash, expires_at, used, created_at) "
            "VALUES (?, ?, ?, ?, 0, ?)",
            (
                str(uuid.uuid4()),
                normalized,
                hashlib.sha256(token.encode()).hexdigest(),
                to_db_time(expires_at),
                to_db_time(now),
            ),
        )
        if self.flow.users.get_by_email(normalized) is not None:
            data = {"token": token, "expiresInMinutes": int(RESET_TTL.total_seconds() // 60)}
            if self.app_base_url:
                data["url"] = f"{self.app_base_url}/auth/reset-password?token={token}"
            await deliver(
                self.delivery,
                DeliveryMessage(to=normalized, template=TEMPLATE_PASSWORD_RESET, data=data),
            )
        logger.info("password_reset_requested", email_hash=hash_identifier(normalized))
        return PasswordResetRequested(expires_at=expires_at)

    async def reset_password(self, email: str, token: str, new_password: str) -> None:
        _check_strength(new_password)
        normalized = normalize_email(email)
        row = self.db.query_one(
            "SELECT id, expires_at FROM vibekit_password_resets "
            "WHERE email = ? AND token_hash = ? AND used = 0",
            (normalized, hashlib.sha256((token or "").encode()).hexdigest()),
        )
        if not row:
            raise ResetTokenInvalidError("Invalid reset token")
        if from_db_time(row["expires_at"]) <= self._now():
            raise ResetTokenExpiredError("Reset token expired")
        consumed = self.db.execute(
            "UPDATE vibekit_password_resets SET used = 1 WHERE id = ? AND used = 0", (row["id"],)
        )
        if consumed.row_count == 0:
            raise ResetTokenInvalidError("Invalid reset token")

        user = self.flow.users.get_by_email(normalized)
        if user is None:
            raise ResetTokenInvalidError("Invalid reset token")
        self._save_credential(user.id, new_password)
        revoked = self.sessions.revoke_all(user.id)
        self.audit.record("password_reset", user_id=user.id, metadata={"sessions_revoked": revoked})
        logger.info("password_reset_completed", user_id=user.id)

    async def has_password(self, user_id: str) -> bool:
        row = self.db.query_one(
            "SELECT id FROM vibekit_user_passwords WHERE user_id = ?", (user_id,)
        )
        return row is not None

    def clean_expired(self) -> int:
        result = self.db.execute(
            "DELETE FROM vibekit_password_resets WHERE expires_at < ?", (to_db_time(self._now()),)
        )
        return result.row_count
