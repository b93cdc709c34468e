"""Transactions on an SQLite connection, tracked through a context variable."""

from __future__ import annotations

import contextlib
import contextvars
import sqlite3
import threading
from typing import Any, Callable, Iterator, Optional, TypeVar

T = TypeVar("T")

_current_tx: contextvars.ContextVar[Optional[sqlite3.Connection]] = contextvars.ContextVar(
    "outboxstore_sqlite_tx", default=None
)


def current_tx() -> Optional[sqlite3.Connection]:
    """Return the connection whose transaction is active in this context, if any."""
    return _current_tx.get()


@contextlib.contextmanager
def use_tx(tx: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Make *tx* the active transaction for the duration of the block."""
    token = _current_tx.set(tx)
    try:
        yield tx
    finally:
        _current_tx.reset(token)


class TransactionManager:
    """Runs callables inside a single database transaction."""

    def __init__(self, db: Optional[sqlite3.Connection], lock: Any = None) -> None:
        self.db = db
        self._lock = lock if lock is not None else threading.RLock()

    def run_in_tx(self, fn: Callable[[], T]) -> T:
        """Call *fn* in a transaction, committing on success and rolling back on error.

        If a transaction is already active in this context, *fn* joins it.
        """
        if self.db is None:
            raise RuntimeError("sqlite transaction manager is not configured")

        if current_tx() is not None:
            return fn()

        db = self.db
        with self._lock:
            try:
                db.execute("BEGIN;")
            except sqlite3.Error as exc:
                raise type(exc)(f"begin tx: {exc}") from exc

            try:
                with use_tx(db):
                    result = fn()
            except BaseException as exc:
                try:
                    db.execute("ROLLBACK;")
                except sqlite3.Error as rb_exc:
                    raise RuntimeError(f"{exc}\nrollback: {rb_exc}") from exc
                raise

            try:
                db.execute("COMMIT;")
            except sqlite3.Error as exc:
                try:
                    db.execute("ROLLBACK;")
                except sqlite3.Error as rb_exc:
                    raise RuntimeError(f"commit: {exc}\nrollback: {rb_exc}") from exc
                raise type(exc)(f"commit: {exc}") from exc

            return result