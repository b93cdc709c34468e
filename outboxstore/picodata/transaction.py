"""Execution context for Picodata queries, tracked through a context variable."""

from __future__ import annotations

import contextlib
import contextvars
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, Sequence, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class Executor(Protocol):
    """Something that runs SQL: a pool or an active transaction."""

    def execute(self, query: str, *args: Any) -> int:
        """Run a statement and return the number of rows it affected."""
        ...

    def query(self, query: str, *args: Any) -> Iterable[Sequence[Any]]:
        """Run a query and return its rows as tuples."""
        ...


_current_tx: contextvars.ContextVar[Optional[Executor]] = contextvars.ContextVar(
    "outboxstore_picodata_tx", default=None
)


def current_tx() -> Optional[Executor]:
    """Return the executor registered as the active transaction, if any."""
    return _current_tx.get()


@contextlib.contextmanager
def use_tx(tx: Executor) -> Iterator[Executor]:
    """Make *tx* the active transaction for the duration of the block."""
    token = _current_tx.set(tx)
    try:
        yield tx
    finally:
        _current_tx.reset(token)


class TransactionManager:
    """Runs callables on behalf of a pool.

    The Picodata client offers no connection-pinned transactions, so the
    callable is run as is, without BEGIN or COMMIT.
    """

    def __init__(self, pool: Any) -> None:
        self.pool = pool

    def run_in_tx(self, fn: Callable[[], T]) -> T:
        """Call *fn* and return its result."""
        if self.pool is None:
            raise RuntimeError("transaction manager is not configured")
        return fn()