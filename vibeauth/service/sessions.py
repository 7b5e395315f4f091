from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from vibeauth.config import DEFAULT_SESSION_DURATION
from vibeauth.logging import get_logger
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.models import Session, from_db_time, to_db_time, utcnow

logger = get_logger(__name__)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


def split_token(token: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split ``sessionId:secret``; None when either half is missing."""
    if not token or not isinstance(token, str):
        return None
    session_id, sep, secret = token.strip().partition(":")
    if not sep or not session_id or not secret:
        return None
    return session_id, secret


class SessionManager:
    """Opaque bearer sessions.

    The bearer token is ``{session_id}:{secret}``; only the SHA-256 of the
    secret is stored, so a leaked table cannot be replayed.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        *,
        ttl: timedelta = DEFAULT_SESSION_DURATION,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.ttl = ttl
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def create(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        db: Optional[DatabaseAdapter] = None,
    ) -> Tuple[str, Session]:
        """Mint a session and return ``(token, session)``.

        Pass ``db`` to write inside a caller's transaction.
        """
        now = self._now()
        session_id = str(uuid.uuid4())
        secret = secrets.token_urlsafe(48)
        session = Session(
            id=session_id,
            user_id=user_id,
            expires_at=now + self.ttl,
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata or {},
        )
        (db or self.db).execute(
            "INSERT INTO vibekit_sessions "
            "(id, user_id, token_hash, expires_at, ip_address, user_agent, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session_id,
                user_id,
                hash_secret(secret),
                to_db_time(session.expires_at),
                ip_address,
                user_agent,
                json.dumps(session.metadata, default=str),
                to_db_time(now),
            ),
        )
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return f"{session_id}:{secret}", session

    def validate(self, token: Optional[str]) -> Optional[Session]:
        """Resolve a bearer token; malformed, unknown and expired tokens yield None."""
        parts = split_token(token)
        if parts is None:
            return None
        session_id, secret = parts
        row = self.db.query_one("SELECT * FROM vibekit_sessions WHERE id = ?", (session_id,))
        if not row:
            return None
        if not hmac.compare_digest(row["token_hash"], hash_secret(secret)):
            logger.warning("session_token_mismatch", session_id=session_id)
            return None
        if from_db_time(row["expires_at"]) <= self._now():
            self.db.execute("DELETE FROM vibekit_sessions WHERE id = ?", (session_id,))
            logger.info("session_expired", session_id=session_id)
            return None
        return Session.from_row(row, current_session_id=session_id)

    def revoke(self, session_id: str) -> bool:
        result = self.db.execute("DELETE FROM vibekit_sessions WHERE id = ?", (session_id,))
        if result.row_count:
            logger.info("session_revoked", session_id=session_id)
        return result.row_count > 0

    def revoke_all(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        db: Optional[DatabaseAdapter] = None,
    ) -> int:
        """Revoke every session of ``user_id``, optionally keeping one."""
        target = db or self.db
        if except_session_id:
            result = target.execute(
                "DELETE FROM vibekit_sessions WHERE user_id = ? AND id != ?",
                (user_id, except_session_id),
            )
        else:
            result = target.execute("DELETE FROM vibekit_sessions WHERE user_id = ?", (user_id,))
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            revoked_count=result.row_count,
            kept_session_id=except_session_id,
        )
        return result.row_count

    def list_active(self, user_id: str, *, current_session_id: Optional[str] = None) -> List[Session]:
        result = self.db.query(
            "SELECT * FROM vibekit_sessions WHERE user_id = ? AND expires_at > ? "
            "ORDER BY created_at DESC",
            (user_id, to_db_time(self._now())),
        )
        return [Session.from_row(row, current_session_id=current_session_id) for row in result.rows]

    def clean_expired(self) -> int:
        result = self.db.execute(
            "DELETE FROM vibekit_sessions WHERE expires_at <= ?",
            (to_db_time(self._now()),),
        )
        return result.row_count
