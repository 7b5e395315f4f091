from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt

from vibeauth.logging import get_logger, hash_identifier
from vibeauth.service.errors import (
    CodeExpiredError,
    CodeInvalidError,
    CodeMaxAttemptsError,
    CodeRateLimitedError,
)
from vibeauth.storage.adapter import DatabaseAdapter, run_in_transaction
from vibeauth.storage.models import from_db_time, to_db_time, utcnow

logger = get_logger(__name__)

CODE_TTL = timedelta(minutes=10)
RATE_LIMIT_WINDOW = timedelta(minutes=15)
MAX_CODES_PER_WINDOW = 3
MAX_ATTEMPTS = 5

Clock = Callable[[], datetime]


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime


@dataclass
class CodeSent:
    """What callers learn after a send; never includes the code."""

    to: str
    expires_at: datetime
    delivered: bool


def generate_code() -> str:
    """Six-digit numeric code drawn uniformly from [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


class CodeStore:
    """Issues and verifies bcrypt-hashed one-time codes.

    One table per channel; ``key_column`` names the identifier column
    (``email`` for email codes, ``phone_number`` for SMS codes).
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        *,
        table: str,
        key_column: str,
        rounds: int = 10,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db
        self.table = table
        self.key_column = key_column
        self.rounds = rounds
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, identifier: str) -> IssuedCode:
        """Persist a fresh code for ``identifier`` and return its plaintext.

        Raises ``CodeRateLimitedError`` when three codes were already issued
        in the trailing 15 minutes. The count and the insert share one
        transaction so concurrent requests cannot both slip under the limit.
        """
        code = generate_code()
        code_hash = bcrypt.hashpw(code.encode(), bcrypt.gensalt(self.rounds)).decode()
        now = self._now()

        def _insert(tx: DatabaseAdapter) -> None:
            row = tx.query_one(
                f"SELECT COUNT(*) AS issued FROM {self.table} "
                f"WHERE {self.key_column} = ? AND created_at > ?",
                (identifier, to_db_time(now - RATE_LIMIT_WINDOW)),
            )
            issued = int(row["issued"]) if row else 0
            if issued >= MAX_CODES_PER_WINDOW:
                raise CodeRateLimitedError(
                    "Too many codes requested. Please wait before trying again.",
                    detail={"window_minutes": int(RATE_LIMIT_WINDOW.total_seconds() // 60)},
                )
            tx.execute(
                f"INSERT INTO {self.table} "
                f"(id, {self.key_column}, code_hash, expires_at, attempts, used, created_at) "
                "VALUES (?, ?, ?, ?, 0, 0, ?)",
                (
                    str(uuid.uuid4()),
                    identifier,
                    code_hash,
                    to_db_time(now + CODE_TTL),
                    to_db_time(now),
                ),
            )

        try:
            run_in_transaction(self.db, _insert)
        except CodeRateLimitedError:
            logger.warning(
                "code_rate_limited",
                table=self.table,
                identifier_hash=hash_identifier(identifier),
            )
            raise
        return IssuedCode(code=code, expires_at=now + CODE_TTL)

    def verify(self, identifier: str, code: str) -> None:
        """Consume the newest unused code for ``identifier`` if ``code`` matches.

        The attempt counter is bumped before comparing so a wrong guess always
        costs an attempt.
        """
        row = self.db.query_one(
            f"SELECT id, code_hash, expires_at, attempts FROM {self.table} "
            f"WHERE {self.key_column} = ? AND used = 0 "
            "ORDER BY created_at DESC LIMIT 1",
            (identifier,),
        )
        if not row:
            raise CodeInvalidError("Invalid or expired code")
        if from_db_time(row["expires_at"]) <= self._now():
            raise CodeExpiredError("Code has expired. Please request a new one.")
        if int(row["attempts"]) >= MAX_ATTEMPTS:
            raise CodeMaxAttemptsError("Too many attempts. Please request a new code.")

        bumped = self.db.execute(
            f"UPDATE {self.table} SET attempts = attempts + 1 WHERE id = ? AND attempts < ?",
            (row["id"], MAX_ATTEMPTS),
        )
        if bumped.row_count == 0:
            raise CodeMaxAttemptsError("Too many attempts. Please request a new code.")

        candidate = (code or "").strip().encode()
        if not bcrypt.checkpw(candidate, row["code_hash"].encode()):
            logger.info(
                "code_mismatch",
                table=self.table,
                identifier_hash=hash_identifier(identifier),
                attempts=int(row["attempts"]) + 1,
            )
            raise CodeInvalidError("Invalid code")

        consumed = self.db.execute(
            f"UPDATE {self.table} SET used = 1 WHERE id = ? AND used = 0",
            (row["id"],),
        )
        if consumed.row_count == 0:
            # Another request consumed it first
            raise CodeInvalidError("Invalid code")

    def clean_expired(self) -> int:
        result = self.db.execute(
            f"DELETE FROM {self.table} WHERE expires_at < ?",
            (to_db_time(self._now()),),
        )
        return result.row_count


def email_code_store(db: DatabaseAdapter, *, rounds: int = 10, clock: Optional[Clock] = None) -> CodeStore:
    return CodeStore(db, table="vibekit_auth_codes", key_column="email", rounds=rounds, clock=clock)


def phone_code_store(db: DatabaseAdapter, *, rounds: int = 10, clock: Optional[Clock] = None) -> CodeStore:
    return CodeStore(db, table="vibekit_phone_codes", key_column="phone_number", rounds=rounds, clock=clock)
