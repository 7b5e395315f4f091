from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from vibeauth.logging import get_logger
from vibeauth.storage.adapter import Params, QueryResult
from vibeauth.storage.errors import ConstraintViolation, TransactionConflict

logger = get_logger(__name__)


def sqlite_path_from_url(url: str) -> str:
    """``sqlite:///app.db`` -> ``app.db``; ``sqlite:////abs/app.db`` -> ``/abs/app.db``."""
    for prefix in ("sqlite:///", "sqlite://"):
        if url.startswith(prefix):
            return url[len(prefix):] or ":memory:"
    return url


class SqliteAdapter:
    """SQLite-backed adapter sharing one connection across threads.

    The connection runs in autocommit mode; ``transaction()`` opens an
    explicit ``BEGIN IMMEDIATE`` so the write lock is taken up front and
    check-then-insert sequences cannot interleave.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")

    @classmethod
    def from_url(cls, url: str) -> "SqliteAdapter":
        return cls(sqlite_path_from_url(url))

    def _run(self, sql: str, params: Params) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as exc:
            raise ConstraintViolation(str(exc), {"engine": "sqlite"}) from exc
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() or "busy" in str(exc).lower():
                raise TransactionConflict(str(exc)) from exc
            raise

    def query(self, sql: str, params: Params = ()) -> QueryResult:
        with self._lock:
            cur = self._run(sql, params)
            rows = [dict(row) for row in cur.fetchall()]
            return QueryResult(rows=rows, row_count=len(rows))

    def query_one(self, sql: str, params: Params = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._run(sql, params).fetchone()
            return dict(row) if row is not None else None

    def execute(self, sql: str, params: Params = ()) -> QueryResult:
        with self._lock:
            cur = self._run(sql, params)
            rows = [dict(row) for row in cur.fetchall()] if cur.description else []
            return QueryResult(rows=rows, row_count=cur.rowcount if cur.rowcount >= 0 else len(rows))

    @contextmanager
    def transaction(self) -> Iterator["SqliteAdapter"]:
        with self._lock:
            if self._depth:
                # Nested: use a savepoint on the already-open transaction
                name = f"sp_{self._depth}"
                self._conn.execute(f"SAVEPOINT {name}")
                self._depth += 1
                try:
                    yield self
                except BaseException:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                    self._conn.execute(f"RELEASE SAVEPOINT {name}")
                    raise
                else:
                    self._conn.execute(f"RELEASE SAVEPOINT {name}")
                finally:
                    self._depth -= 1
                return

            self._run("BEGIN IMMEDIATE", ())
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()
