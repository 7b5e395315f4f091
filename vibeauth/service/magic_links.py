from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

from vibeauth.logging import get_logger, hash_identifier
from vibeauth.service.delivery import TEMPLATE_MAGIC_LINK, Delivery, DeliveryMessage, deliver
from vibeauth.service.errors import (
    MagicLinkExpiredError,
    MagicLinkInvalidError,
    MagicLinkUsedError,
)
from vibeauth.service.users import SignInFlow, normalize_email
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.models import AuthResult, from_db_time, to_db_time, utcnow

logger = get_logger(__name__)

DEFAULT_TTL_MINUTES = 15


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class MagicLinkSent:
    email: str
    expires_at: datetime
    delivered: bool


class MagicLinkService:
    """Passwordless sign-in through single-use emailed links."""

    def __init__(
        self,
        db: DatabaseAdapter,
        flow: SignInFlow,
        *,
        delivery: Optional[Delivery],
        app_base_url: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.flow = flow
        self.delivery = delivery
        self.app_base_url = app_base_url.rstrip("/")
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def build_url(self, email: str, token: str, redirect_uri: Optional[str] = None) -> str:
        base = redirect_uri or f"{self.app_base_url}/auth/verify"
        sep = "&" if "?" in base else "?"
        return f"{base}{sep}{urlencode({'token': token, 'email': email})}"

    async def send(
        self,
        email: str,
        *,
        redirect_uri: Optional[str] = None,
        expires_in_minutes: Optional[int] = None,
    ) -> MagicLinkSent:
        normalized = normalize_email(email)
        ttl = timedelta(minutes=expires_in_minutes or DEFAULT_TTL_MINUTES)
        token = secrets.token_urlsafe(32)
        now = self._now()
        expires_at = now + ttl
        self.db.execute(
            "INSERT INTO vibekit_magic_links "
            "(id, email, token_hash, redirect_uri, expires_at, used, created_at) "
            "VALUES (?, ?, ?, ?, ?, 0, ?)",
            (
                str(uuid.uuid4()),
                normalized,
                hash_token(token),
                redirect_uri,
                to_db_time(expires_at),
                to_db_time(now),
            ),
        )
        url = self.build_url(normalized, token, redirect_uri)
        delivered = await deliver(
            self.delivery,
            DeliveryMessage(
                to=normalized,
                template=TEMPLATE_MAGIC_LINK,
                data={"token": token, "redirectUri": redirect_uri, "url": url},
            ),
        )
        logger.info("magic_link_issued", email_hash=hash_identifier(normalized), delivered=delivered)
        return MagicLinkSent(email=normalized, expires_at=expires_at, delivered=delivered)

    async def verify(
        self,
        email: str,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        row = self.db.query_one(
            "SELECT id, expires_at, used FROM vibekit_magic_links "
            "WHERE email = ? AND token_hash = ?",
            (normalized, hash_token(token or "")),
        )
        if not row:
            raise MagicLinkInvalidError("Invalid magic link")
        if row["used"]:
            raise MagicLinkUsedError("This magic link has already been used")
        if from_db_time(row["expires_at"]) <= self._now():
            raise MagicLinkExpiredError("This magic link has expired")

        consumed = self.db.execute(
            "UPDATE vibekit_magic_links SET used = 1 WHERE id = ? AND used = 0", (row["id"],)
        )
        if consumed.row_count == 0:
            raise MagicLinkUsedError("This magic link has already been used")

        user, is_new = self.flow.resolve_by_email(normalized, email_verified=True)
        return self.flow.complete(
            user,
            method="magic_link",
            is_new_user=is_new,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def clean_expired(self) -> int:
        result = self.db.execute(
            "DELETE FROM vibekit_magic_links WHERE expires_at < ?", (to_db_time(self._now()),)
        )
        return result.row_count
