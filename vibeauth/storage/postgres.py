from __future__ import annotations

import re
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vibeauth.logging import get_logger
from vibeauth.storage.adapter import Params, QueryResult
from vibeauth.storage.errors import ConstraintViolation, TransactionConflict

logger = get_logger(__name__)

_INSERT_OR_IGNORE = re.compile(r"^\s*INSERT\s+OR\s+IGNORE\s+", re.IGNORECASE)


def translate_sql(sql: str) -> str:
    """Rewrite the portable SQL dialect used by the services into Postgres syntax.

    ``?`` placeholders become ``%s`` and ``INSERT OR IGNORE`` becomes an
    ``INSERT ... ON CONFLICT DO NOTHING``.
    """
    translated = sql.replace("?", "%s")
    if _INSERT_OR_IGNORE.match(translated):
        translated = _INSERT_OR_IGNORE.sub("INSERT ", translated, count=1)
        translated = translated.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    return translated


class _PostgresCursorRunner:
    """Executes statements on one borrowed connection."""

    def __init__(self, conn) -> None:
        self._conn = conn

    def run(self, sql: str, params: Params) -> QueryResult:
        try:
            cur = self._conn.execute(translate_sql(sql), tuple(params))
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation(str(exc), {"engine": "postgres"}) from exc
        except (errors.SerializationFailure, errors.DeadlockDetected) as exc:
            raise TransactionConflict(str(exc)) from exc
        rows = cur.fetchall() if cur.description else []
        return QueryResult(rows=[dict(r) for r in rows], row_count=cur.rowcount if cur.rowcount >= 0 else len(rows))


class _PostgresTransaction:
    """Adapter bound to a single serializable transaction."""

    def __init__(self, runner: _PostgresCursorRunner) -> None:
        self._runner = runner

    def query(self, sql: str, params: Params = ()) -> QueryResult:
        return self._runner.run(sql, params)

    def query_one(self, sql: str, params: Params = ()) -> Optional[Dict[str, Any]]:
        result = self._runner.run(sql, params)
        return result.rows[0] if result.rows else None

    def execute(self, sql: str, params: Params = ()) -> QueryResult:
        return self._runner.run(sql, params)

    @contextmanager
    def transaction(self) -> Iterator["_PostgresTransaction"]:
        # Already inside a transaction; nested blocks share it
        yield self

    def close(self) -> None:
        return None


class PostgresAdapter:
    """Postgres-backed adapter using a psycopg connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    def query(self, sql: str, params: Params = ()) -> QueryResult:
        with self._connect() as conn:
            return _PostgresCursorRunner(conn).run(sql, params)

    def query_one(self, sql: str, params: Params = ()) -> Optional[Dict[str, Any]]:
        result = self.query(sql, params)
        return result.rows[0] if result.rows else None

    def execute(self, sql: str, params: Params = ()) -> QueryResult:
        with self._connect() as conn:
            return _PostgresCursorRunner(conn).run(sql, params)

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        with self._connect() as conn:
            conn.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
            yield _PostgresTransaction(_PostgresCursorRunner(conn))
            # Serializable conflicts are often only reported at COMMIT
            try:
                conn.commit()
            except (errors.SerializationFailure, errors.DeadlockDetected) as exc:
                raise TransactionConflict(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()
