from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from vibeauth.api.request import extract_token
from vibeauth.config import DEFAULT_SESSION_DURATION, Settings
from vibeauth.logging import get_logger, hash_identifier
from vibeauth.service.audit import AuditLog
from vibeauth.service.codes import CODE_TTL, CodeSent, email_code_store, phone_code_store
from vibeauth.service.delivery import TEMPLATE_VERIFICATION_CODE, Delivery, DeliveryMessage, deliver
from vibeauth.service.errors import UnauthorizedError, UserNotFoundError
from vibeauth.service.magic_links import MagicLinkService
from vibeauth.service.mfa import MfaService
from vibeauth.service.passkeys import PasskeyService
from vibeauth.service.passwords import PasswordService
from vibeauth.service.phone import PhoneAuthService
from vibeauth.service.rbac import PermissionStore
from vibeauth.service.sessions import SessionManager
from vibeauth.service.users import SignInFlow, UserStore, normalize_email
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.models import AuthResult, Session, User, UserPage, utcnow

logger = get_logger(__name__)

_UNSET: Any = object()


class IdentityProvider:
    """Front door for every identity operation.

    Owns one instance of each credential service, all sharing the same
    adapter, clock and ``SignInFlow``. Request-bound calls accept anything
    ``extract_token`` understands: a FastAPI request, a header mapping or a
    ``RequestCredentials`` implementation.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        *,
        allow_signup: bool = True,
        session_ttl: timedelta = DEFAULT_SESSION_DURATION,
        app_base_url: str = "http://localhost:3000",
        rp_id: str = "localhost",
        rp_name: str = "VibeKit App",
        origin: Optional[str] = None,
        mfa_issuer: str = "VibeKit",
        code_rounds: int = 10,
        email_delivery: Optional[Delivery] = None,
        sms_delivery: Optional[Delivery] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.email_delivery = email_delivery
        self._clock = clock or utcnow

        self.users = UserStore(db, clock=self._clock)
        self.sessions = SessionManager(db, ttl=session_ttl, clock=self._clock)
        self.audit = AuditLog(db, clock=self._clock)
        self.flow = SignInFlow(self.users, self.sessions, self.audit, allow_signup=allow_signup)

        self.codes = email_code_store(db, rounds=code_rounds, clock=self._clock)
        self.magic_links = MagicLinkService(
            db, self.flow, delivery=email_delivery, app_base_url=app_base_url, clock=self._clock
        )
        self.passwords = PasswordService(
            db,
            self.flow,
            self.sessions,
            self.audit,
            delivery=email_delivery,
            app_base_url=app_base_url,
            clock=self._clock,
        )
        self.phone = PhoneAuthService(
            phone_code_store(db, rounds=code_rounds, clock=self._clock),
            self.flow,
            self.audit,
            delivery=sms_delivery,
        )
        self.mfa = MfaService(db, self.users, self.audit, issuer=mfa_issuer, clock=self._clock)
        self.passkeys = PasskeyService(
            db,
            self.flow,
            self.audit,
            rp_id=rp_id,
            rp_name=rp_name,
            origin=origin,
            clock=self._clock,
        )
        self.permissions = PermissionStore(db, clock=self._clock)

    @classmethod
    def from_settings(
        cls,
        db: DatabaseAdapter,
        settings: Settings,
        *,
        email_delivery: Optional[Delivery] = None,
        sms_delivery: Optional[Delivery] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "IdentityProvider":
        return cls(
            db,
            allow_signup=settings.allow_signup,
            session_ttl=settings.session_ttl,
            app_base_url=settings.app_base_url,
            rp_id=settings.webauthn_rp_id,
            rp_name=settings.webauthn_rp_name,
            origin=settings.webauthn_origin,
            mfa_issuer=settings.mfa_issuer,
            code_rounds=settings.code_hash_rounds,
            email_delivery=email_delivery,
            sms_delivery=sms_delivery,
            clock=clock,
        )

    def _require(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found", detail={"user_id": user_id})
        return user

    # Email one-time codes

    async def send_code(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CodeSent:
        """Issue a six-digit code and hand it to the email channel.

        Delivery failures are logged; the stored code stays valid.
        """
        normalized = normalize_email(email)
        issued = self.codes.issue(normalized)
        self.audit.record(
            "code_sent",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"channel": "email", "email_hash": hash_identifier(normalized)},
        )
        delivered = await deliver(
            self.email_delivery,
            DeliveryMessage(
                to=normalized,
                template=TEMPLATE_VERIFICATION_CODE,
                data={"code": issued.code, "expiresInMinutes": int(CODE_TTL.total_seconds() // 60)},
            ),
        )
        return CodeSent(to=normalized, expires_at=issued.expires_at, delivered=delivered)

    async def verify_code(
        self,
        email: str,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        self.codes.verify(normalized, code)
        user, is_new = self.flow.resolve_by_email(normalized, email_verified=True)
        return self.flow.complete(
            user,
            method="email_code",
            is_new_user=is_new,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # Request-bound

    async def get_session(self, request: Any) -> Optional[Session]:
        return self.sessions.validate(extract_token(request))

    async def get_user(self, request: Any) -> Optional[User]:
        session = await self.get_session(request)
        if session is None:
            return None
        user = self.users.get_by_id(session.user_id)
        if user is None or user.banned:
            return None
        return user

    async def require_user(self, request: Any) -> User:
        user = await self.get_user(request)
        if user is None:
            raise UnauthorizedError(
                "Authentication required. Please log in and include a valid session token."
            )
        return user

    async def logout(self, request: Any, *, everywhere: bool = False) -> bool:
        """Revoke the caller's session, or all of their sessions."""
        session = await self.get_session(request)
        if session is None:
            return False
        if everywhere:
            self.sessions.revoke_all(session.user_id)
        else:
            self.sessions.revoke(session.id)
        self.audit.record(
            "logout",
            user_id=session.user_id,
            metadata={"scope": "all" if everywhere else "current"},
        )
        return True

    async def has_role(self, request: Any, role: str) -> bool:
        user = await self.get_user(request)
        return user is not None and user.role == role

    # User administration

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get_by_id(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return self.users.get_by_email(email)

    async def count_users(self, *, role: Optional[str] = None) -> int:
        return self.users.count(role=role)

    async def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        role: Optional[str] = None,
        search: Optional[str] = None,
        order_by: str = "created_at",
        order: str = "desc",
    ) -> UserPage:
        return self.users.list(
            page=page, limit=limit, role=role, search=search, order_by=order_by, order=order
        )

    async def update_user(
        self,
        user_id: str,
        *,
        name: Any = _UNSET,
        avatar_url: Any = _UNSET,
        role: Any = _UNSET,
        metadata: Any = _UNSET,
    ) -> User:
        previous = self._require(user_id)
        changes: Dict[str, Any] = {
            key: value
            for key, value in (
                ("name", name),
                ("avatar_url", avatar_url),
                ("role", role),
                ("metadata", metadata),
            )
            if value is not _UNSET
        }
        updated = self.users.update(user_id, **changes)
        if updated is None:
            raise UserNotFoundError("User not found", detail={"user_id": user_id})
        self.audit.record("user_update", user_id=user_id, metadata={"updated_fields": sorted(changes)})
        if "role" in changes and previous.role != updated.role:
            self.audit.record(
                "role_change",
                user_id=user_id,
                metadata={"previous_role": previous.role, "new_role": updated.role},
            )
        return updated

    async def set_role(self, user_id: str, role: str) -> User:
        return await self.update_user(user_id, role=role)

    async def delete_user(self, user_id: str) -> bool:
        """Remove the user after revoking every session they hold."""
        self.sessions.revoke_all(user_id)
        deleted = self.users.delete(user_id)
        if deleted:
            self.audit.record("user_delete", user_id=user_id)
        return deleted

    async def ban_user(self, user_id: str, reason: Optional[str] = None) -> User:
        self._require(user_id)
        self.users.set_banned(user_id, True, reason)
        revoked = self.sessions.revoke_all(user_id)
        self.audit.record("ban", user_id=user_id, metadata={"reason": reason, "sessions_revoked": revoked})
        return self._require(user_id)

    async def unban_user(self, user_id: str) -> User:
        self._require(user_id)
        self.users.set_banned(user_id, False)
        self.audit.record("unban", user_id=user_id)
        return self._require(user_id)

    # Sessions

    async def get_active_sessions(
        self, user_id: str, *, current_session_id: Optional[str] = None
    ) -> List[Session]:
        return self.sessions.list_active(user_id, current_session_id=current_session_id)

    async def revoke_all_sessions(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        revoked = self.sessions.revoke_all(user_id, except_session_id=except_session_id)
        self.audit.record(
            "session_revoke",
            user_id=user_id,
            metadata={"scope": "all", "revoked": revoked},
        )
        return revoked

    async def cleanup_expired(self) -> Dict[str, int]:
        """Delete expired sessions, codes, links, reset tokens and passkey challenges."""
        removed = {
            "sessions": self.sessions.clean_expired(),
            "email_codes": self.codes.clean_expired(),
            "phone_codes": self.phone.codes.clean_expired(),
            "magic_links": self.magic_links.clean_expired(),
            "password_resets": self.passwords.clean_expired(),
            "passkey_challenges": self.passkeys.clean_expired(),
        }
        logger.info("expired_credentials_cleaned", **{f"{k}_count": v for k, v in removed.items()})
        return removed
