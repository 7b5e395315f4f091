from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from vibeauth.logging import get_logger
from vibeauth.storage.adapter import DatabaseAdapter

logger = get_logger(__name__)

# Timestamps are written by the application as fixed-width UTC ISO strings,
# booleans as INTEGER 0/1, so the same DDL runs on SQLite and Postgres.

USERS = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        name TEXT,
        avatar_url TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        email_verified INTEGER NOT NULL DEFAULT 0,
        phone TEXT,
        phone_verified INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}',
        banned INTEGER NOT NULL DEFAULT 0,
        banned_reason TEXT,
        last_login_at TEXT,
        login_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_users_phone ON vibekit_users(phone)",
)

SESSIONS = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES vibekit_users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_sessions_user ON vibekit_sessions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_vibekit_sessions_expires ON vibekit_sessions(expires_at)",
)

AUDIT = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        user_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_audit_user ON vibekit_audit_log(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_vibekit_audit_action ON vibekit_audit_log(action)",
    "CREATE INDEX IF NOT EXISTS idx_vibekit_audit_created ON vibekit_audit_log(created_at)",
)

AUTH_CODES = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_auth_codes (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_auth_codes_email ON vibekit_auth_codes(email, created_at)",
)

PHONE_CODES = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_phone_codes (
        id TEXT PRIMARY KEY,
        phone_number TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_phone_codes_phone ON vibekit_phone_codes(phone_number, created_at)",
)

MAGIC_LINKS = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_magic_links (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        redirect_uri TEXT,
        expires_at TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_magic_links_token ON vibekit_magic_links(token_hash)",
)

PASSWORDS = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_user_passwords (
        id TEXT PRIMARY KEY,
        user_id TEXT UNIQUE NOT NULL REFERENCES vibekit_users(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vibekit_password_resets (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_password_resets_token ON vibekit_password_resets(token_hash)",
)

MFA = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_mfa_factors (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES vibekit_users(id) ON DELETE CASCADE,
        factor_type TEXT NOT NULL DEFAULT 'totp',
        secret TEXT NOT NULL,
        verified INTEGER NOT NULL DEFAULT 0,
        friendly_name TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_mfa_factors_user ON vibekit_mfa_factors(user_id)",
    """
    CREATE TABLE IF NOT EXISTS vibekit_mfa_backup_codes (
        id TEXT PRIMARY KEY,
        factor_id TEXT NOT NULL REFERENCES vibekit_mfa_factors(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_mfa_backup_factor ON vibekit_mfa_backup_codes(factor_id)",
)

PASSKEYS = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_passkeys (
        id TEXT PRIMARY KEY,
        credential_id TEXT UNIQUE NOT NULL,
        user_id TEXT NOT NULL REFERENCES vibekit_users(id) ON DELETE CASCADE,
        public_key TEXT NOT NULL,
        counter INTEGER NOT NULL DEFAULT 0,
        device_type TEXT NOT NULL DEFAULT 'single_device',
        backed_up INTEGER NOT NULL DEFAULT 0,
        friendly_name TEXT,
        last_used_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_passkeys_user ON vibekit_passkeys(user_id)",
    """
    CREATE TABLE IF NOT EXISTS vibekit_passkey_challenges (
        id TEXT PRIMARY KEY,
        challenge TEXT UNIQUE NOT NULL,
        user_id TEXT,
        type TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
)

RBAC = (
    """
    CREATE TABLE IF NOT EXISTS vibekit_permissions (
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vibekit_roles (
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vibekit_role_permissions (
        id TEXT PRIMARY KEY,
        role_id TEXT NOT NULL REFERENCES vibekit_roles(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES vibekit_permissions(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        UNIQUE (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vibekit_user_roles (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES vibekit_users(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES vibekit_roles(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        UNIQUE (user_id, role_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vibekit_user_roles_user ON vibekit_user_roles(user_id)",
)

# Applied in order; later groups reference tables created by earlier ones.
FEATURES: Dict[str, Tuple[str, ...]] = {
    "users": USERS,
    "sessions": SESSIONS,
    "audit": AUDIT,
    "auth_codes": AUTH_CODES,
    "phone_codes": PHONE_CODES,
    "magic_links": MAGIC_LINKS,
    "passwords": PASSWORDS,
    "mfa": MFA,
    "passkeys": PASSKEYS,
    "rbac": RBAC,
}


class SchemaMigrator:
    """Creates every identity table once per process.

    Run it at startup; ``migrate`` is idempotent and thread-safe so a second
    caller simply returns.
    """

    def __init__(self, db: DatabaseAdapter, features: Optional[Iterable[str]] = None) -> None:
        self.db = db
        self.features: List[str] = list(features) if features is not None else list(FEATURES)
        unknown = [name for name in self.features if name not in FEATURES]
        if unknown:
            raise ValueError(f"unknown schema features: {', '.join(unknown)}")
        self._lock = threading.Lock()
        self._applied = False

    @property
    def applied(self) -> bool:
        return self._applied

    def migrate(self) -> bool:
        """Apply the schema; returns False when it was already applied."""
        if self._applied:
            return False
        with self._lock:
            if self._applied:
                return False
            with self.db.transaction() as tx:
                for name in self.features:
                    for statement in FEATURES[name]:
                        tx.execute(statement)
            self._applied = True
            logger.info("schema_migrated", features=self.features)
            return True
