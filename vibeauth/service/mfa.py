from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from vibeauth.logging import get_logger
from vibeauth.service.audit import AuditLog
from vibeauth.service.errors import MfaFactorNotFoundError, UserNotFoundError
from vibeauth.service.users import UserStore
from vibeauth.storage.adapter import DatabaseAdapter, run_in_transaction
from vibeauth.storage.models import MfaEnrollment, MfaFactor, to_db_time, utcnow

logger = get_logger(__name__)

TOTP_PERIOD = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
SECRET_BYTES = 20
BACKUP_CODE_COUNT = 10


def generate_secret() -> str:
    """20-byte TOTP seed, hex encoded."""
    return secrets.token_hex(SECRET_BYTES)


def totp_at(secret_hex: str, timestamp: float, *, period: int = TOTP_PERIOD, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 TOTP (HMAC-SHA1) for the step containing ``timestamp``."""
    key = bytes.fromhex(secret_hex)
    counter = int(timestamp // period).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(
    secret_hex: str,
    code: str,
    timestamp: float,
    *,
    window: int = TOTP_WINDOW,
    period: int = TOTP_PERIOD,
) -> bool:
    """Accept the current step and ``window`` adjacent steps either side."""
    candidate = (code or "").strip()
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    for step in range(-window, window + 1):
        generated = totp_at(secret_hex, timestamp + step * period, period=period)
        if hmac.compare_digest(generated, candidate):
            return True
    return False


def otpauth_uri(secret_hex: str, account: str, issuer: str) -> str:
    """Provisioning URI for authenticator apps; the seed is sent base32 encoded."""
    secret_b32 = base64.b32encode(bytes.fromhex(secret_hex)).decode().rstrip("=")
    label = f"{quote(issuer)}:{quote(account)}"
    query = urlencode(
        {
            "secret": secret_b32,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(6).upper()
        codes.append(f"{raw[0:4]}-{raw[4:8]}-{raw[8:12]}")
    return codes


def hash_backup_code(code: str) -> str:
    return hashlib.sha256((code or "").strip().upper().encode()).hexdigest()


@dataclass
class MfaVerification:
    verified: bool
    factor_id: str
    method: Optional[str] = None


class MfaService:
    """TOTP factors with single-use backup codes."""

    def __init__(
        self,
        db: DatabaseAdapter,
        users: UserStore,
        audit: AuditLog,
        *,
        issuer: str = "VibeKit",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.users = users
        self.audit = audit
        self.issuer = issuer
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _get_factor(self, user_id: str, factor_id: str) -> dict:
        row = self.db.query_one(
            "SELECT * FROM vibekit_mfa_factors WHERE id = ? AND user_id = ?",
            (factor_id, user_id),
        )
        if not row:
            raise MfaFactorNotFoundError("MFA factor not found", detail={"factor_id": factor_id})
        return row

    def _store_backup_codes(self, tx: DatabaseAdapter, factor_id: str, codes: List[str]) -> None:
        now = to_db_time(self._now())
        for code in codes:
            tx.execute(
                "INSERT INTO vibekit_mfa_backup_codes (id, factor_id, code_hash, used, created_at) "
                "VALUES (?, ?, ?, 0, ?)",
                (str(uuid.uuid4()), factor_id, hash_backup_code(code), now),
            )

    async def enroll(self, user_id: str, friendly_name: str = "Authenticator App") -> MfaEnrollment:
        """Create an unverified TOTP factor.

        The secret and backup codes are returned here and never again.
        """
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        factor_id = str(uuid.uuid4())
        secret = generate_secret()
        backup_codes = generate_backup_codes()

        def _insert(tx: DatabaseAdapter) -> None:
            tx.execute(
                "INSERT INTO vibekit_mfa_factors "
                "(id, user_id, factor_type, secret, verified, friendly_name, created_at) "
                "VALUES (?, ?, 'totp', ?, 0, ?, ?)",
                (factor_id, user_id, secret, friendly_name, to_db_time(self._now())),
            )
            self._store_backup_codes(tx, factor_id, backup_codes)

        run_in_transaction(self.db, _insert)
        self.audit.record("mfa_enroll", user_id=user_id, metadata={"factor_id": factor_id})
        return MfaEnrollment(
            factor_id=factor_id,
            secret=secret,
            otpauth_uri=otpauth_uri(secret, user.email, self.issuer),
            backup_codes=backup_codes,
        )

    async def verify(self, user_id: str, factor_id: str, code: str) -> MfaVerification:
        """Check a TOTP code, falling back to an unused backup code.

        The first successful TOTP check marks the factor verified.
        """
        factor = self._get_factor(user_id, factor_id)
        if verify_totp(factor["secret"], code, self._now().timestamp()):
            if not factor["verified"]:
                self.db.execute(
                    "UPDATE vibekit_mfa_factors SET verified = 1 WHERE id = ?", (factor_id,)
                )
            self.audit.record(
                "mfa_verify",
                user_id=user_id,
                metadata={"factor_id": factor_id, "method": "totp", "success": True},
            )
            return MfaVerification(verified=True, factor_id=factor_id, method="totp")

        backup = self.db.query_one(
            "SELECT id FROM vibekit_mfa_backup_codes WHERE factor_id = ? AND code_hash = ? AND used = 0",
            (factor_id, hash_backup_code(code)),
        )
        if backup:
            consumed = self.db.execute(
                "UPDATE vibekit_mfa_backup_codes SET used = 1 WHERE id = ? AND used = 0",
                (backup["id"],),
            )
            if consumed.row_count:
                self.audit.record(
                    "mfa_verify",
                    user_id=user_id,
                    metadata={"factor_id": factor_id, "method": "backup_code", "success": True},
                )
                return MfaVerification(verified=True, factor_id=factor_id, method="backup_code")

        self.audit.record(
            "mfa_verify", user_id=user_id, metadata={"factor_id": factor_id, "success": False}
        )
        logger.info("mfa_verify_failed", user_id=user_id, factor_id=factor_id)
        return MfaVerification(verified=False, factor_id=factor_id)

    async def unenroll(self, user_id: str, factor_id: str) -> None:
        self._get_factor(user_id, factor_id)

        def _delete(tx: DatabaseAdapter) -> None:
            tx.execute("DELETE FROM vibekit_mfa_backup_codes WHERE factor_id = ?", (factor_id,))
            tx.execute(
                "DELETE FROM vibekit_mfa_factors WHERE id = ? AND user_id = ?", (factor_id, user_id)
            )

        run_in_transaction(self.db, _delete)
        self.audit.record("mfa_unenroll", user_id=user_id, metadata={"factor_id": factor_id})

    async def list_factors(self, user_id: str) -> List[MfaFactor]:
        result = self.db.query(
            "SELECT id, user_id, factor_type, verified, friendly_name, created_at "
            "FROM vibekit_mfa_factors WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )
        return [MfaFactor.from_row(row) for row in result.rows]

    async def is_enabled(self, user_id: str) -> bool:
        row = self.db.query_one(
            "SELECT id FROM vibekit_mfa_factors WHERE user_id = ? AND verified = 1 LIMIT 1",
            (user_id,),
        )
        return row is not None

    async def backup_codes_remaining(self, user_id: str, factor_id: str) -> int:
        self._get_factor(user_id, factor_id)
        row = self.db.query_one(
            "SELECT COUNT(*) AS remaining FROM vibekit_mfa_backup_codes WHERE factor_id = ? AND used = 0",
            (factor_id,),
        )
        return int(row["remaining"]) if row else 0

    async def regenerate_backup_codes(self, user_id: str, factor_id: str) -> List[str]:
        """Replace every backup code of the factor; old codes stop working."""
        self._get_factor(user_id, factor_id)
        codes = generate_backup_codes()

        def _replace(tx: DatabaseAdapter) -> None:
            tx.execute("DELETE FROM vibekit_mfa_backup_codes WHERE factor_id = ?", (factor_id,))
            self._store_backup_codes(tx, factor_id, codes)

        run_in_transaction(self.db, _replace)
        logger.info("mfa_backup_codes_regenerated", user_id=user_id, factor_id=factor_id)
        return codes
