from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from vibeauth.logging import get_logger
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.models import AuditEvent, to_db_time, utcnow

logger = get_logger(__name__)

AUDIT_ACTIONS = frozenset(
    {
        "code_sent",
        "signup",
        "login",
        "logout",
        "password_change",
        "password_reset",
        "mfa_enroll",
        "mfa_verify",
        "mfa_unenroll",
        "passkey_register",
        "passkey_remove",
        "session_revoke",
        "role_change",
        "ban",
        "unban",
        "user_update",
        "user_delete",
    }
)


class AuditLog:
    """Append-only record of security-relevant events.

    ``record`` never raises: a failed write is logged and the calling flow
    carries on.
    """

    def __init__(self, db: DatabaseAdapter, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self._clock = clock or utcnow

    def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if action not in AUDIT_ACTIONS:
            logger.warning("audit_action_unknown", action=action)
        try:
            self.db.execute(
                "INSERT INTO vibekit_audit_log "
                "(id, action, user_id, ip_address, user_agent, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    str(uuid.uuid4()),
                    action,
                    user_id,
                    ip_address,
                    user_agent,
                    json.dumps(metadata or {}, default=str),
                    to_db_time(self._clock()),
                ),
            )
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                action=action,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def list_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """Query the log for admin tooling. Newest first."""
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if action:
            clauses.append("action = ?")
            params.append(action)
        if since:
            clauses.append("created_at >= ?")
            params.append(to_db_time(since))
        if until:
            clauses.append("created_at <= ?")
            params.append(to_db_time(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([max(1, min(limit, 1000)), max(0, offset)])
        result = self.db.query(
            f"SELECT * FROM vibekit_audit_log {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params,
        )
        return [AuditEvent.from_row(row) for row in result.rows]
