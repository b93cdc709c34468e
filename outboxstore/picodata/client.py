"""A client wrapping a Picodata query pool."""

from __future__ import annotations

from typing import Any

from outboxstore.picodata.transaction import TransactionManager


class PicodataClient:
    """Owns a query pool and hands out transaction managers for it."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @property
    def pool(self) -> Any:
        return self._pool

    def close(self) -> None:
        """Close the underlying pool, if there is one."""
        if self._pool is not None:
            self._pool.close()

    def tx_pool(self) -> TransactionManager:
        """Return a transaction manager bound to this client's pool."""
        return TransactionManager(self._pool)

    def __enter__(self) -> PicodataClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()