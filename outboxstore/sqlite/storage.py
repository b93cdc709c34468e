"""Opening and configuring SQLite databases for the outbox."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Optional

_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA synchronous=NORMAL;",
)


def _default_logger() -> logging.Logger:
    return logging.getLogger("outboxstore")


@dataclass
class SQLiteOptions:
    """Settings used to open an SQLite database."""

    dsn: str = ""
    max_open_conns: int = 10
    max_idle_conns: int = 10
    conn_max_lifetime: float = 0.0
    conn_max_idle_time: float = 0.0
    check_ping: bool = True
    log: Optional[logging.Logger] = field(default_factory=_default_logger)

    def validate(self) -> None:
        """Raise ValueError if the settings cannot be used."""
        if not self.dsn:
            raise ValueError("nil dsn")
        if self.log is None:
            raise ValueError("nil logger")
        if self.max_open_conns < 1:
            raise ValueError("max open conns must be >= 1")
        if self.max_idle_conns < 0:
            raise ValueError("max idle conns must be >= 0")


class SQLiteClient:
    """An open SQLite database in autocommit mode, shareable between threads."""

    def __init__(self, db: sqlite3.Connection, options: SQLiteOptions) -> None:
        self._db: Optional[sqlite3.Connection] = db
        self.options = options
        self.lock = threading.RLock()

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise sqlite3.ProgrammingError("sqlite client is closed")
        return self._db

    @property
    def closed(self) -> bool:
        return self._db is None

    def close(self) -> None:
        """Close the database; closing twice is harmless."""
        if self._db is None:
            return
        db, self._db = self._db, None
        db.close()

    def __enter__(self) -> SQLiteClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _configure(db: sqlite3.Connection) -> None:
    for query in _PRAGMAS:
        try:
            db.execute(query).fetchall()
        except sqlite3.Error as exc:
            raise sqlite3.OperationalError(f"sqlite pragma {query!r}: {exc}") from exc


def create(
    dsn,
    check_ping=True,
    log=None,
    max_open_conns=10,
    max_idle_conns=10,
    conn_max_lifetime=0.0,
    conn_max_idle_time=0.0,
) -> SQLiteClient:
    """Open the database at *dsn*, apply the standard pragmas and optionally ping it."""
    options = SQLiteOptions(
        dsn=dsn,
        max_open_conns=max_open_conns,
        max_idle_conns=max_idle_conns,
        conn_max_lifetime=conn_max_lifetime,
        conn_max_idle_time=conn_max_idle_time,
        check_ping=check_ping,
        log=log if log is not None else _default_logger(),
    )
    try:
        options.validate()
    except ValueError as exc:
        raise ValueError(f"validate options: {exc}") from exc

    try:
        db = sqlite3.connect(
            options.dsn,
            timeout=5.0,
            isolation_level=None,
            check_same_thread=False,
            uri=options.dsn.startswith("file:"),
        )
    except sqlite3.Error as exc:
        raise sqlite3.OperationalError(f"open sqlite: {exc}") from exc

    try:
        _configure(db)
        if options.check_ping:
            try:
                db.execute("SELECT 1;").fetchone()
            except sqlite3.Error as exc:
                raise sqlite3.OperationalError(f"ping sqlite: {exc}") from exc
    except BaseException:
        db.close()
        raise

    return SQLiteClient(db, options)