from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from vibeauth.logging import get_logger
from vibeauth.storage.errors import TransactionConflict

logger = get_logger(__name__)

T = TypeVar("T")

Params = Sequence[Any]


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


class DatabaseAdapter(Protocol):
    """Minimal SQL surface the identity services depend on.

    Statements use ``?`` placeholders. Unique and foreign-key violations are
    raised as ``ConstraintViolation``.
    """

    def query(self, sql: str, params: Params = ()) -> QueryResult: ...

    def query_one(self, sql: str, params: Params = ()) -> Optional[Dict[str, Any]]: ...

    def execute(self, sql: str, params: Params = ()) -> QueryResult: ...

    def transaction(self) -> AbstractContextManager["DatabaseAdapter"]: ...

    def close(self) -> None: ...


def run_in_transaction(
    db: DatabaseAdapter,
    fn: Callable[[DatabaseAdapter], T],
    *,
    attempts: int = 3,
) -> T:
    """Run ``fn`` inside a transaction, retrying when the engine reports a conflict."""
    last_exc: Optional[TransactionConflict] = None
    for attempt in range(1, attempts + 1):
        try:
            with db.transaction() as tx:
                return fn(tx)
        except TransactionConflict as exc:
            last_exc = exc
            logger.warning("transaction_conflict_retry", attempt=attempt, error=str(exc))
    assert last_exc is not None
    raise last_exc
