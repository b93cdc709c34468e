"""Data models, identifiers and client contracts shared by the storage backends."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

NIL_JOB_ID = str(uuid.UUID(int=0))
DEFAULT_QUEUE = "default"


def new_job_id() -> str:
    """Return a fresh random job identifier in canonical UUID text form."""
    return str(uuid.uuid4())


class NoJobsError(LookupError):
    """Raised when no job matches a lookup or none is ready to be reserved."""

    def __init__(self, message: str = "no jobs") -> None:
        super().__init__(message)


@dataclass
class Job:
    """A job waiting in the outbox queue."""

    id: str = NIL_JOB_ID
    queue: str = ""
    name: str = ""
    payload: str = ""
    attempts: int = 0
    reserved_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class JobFailed:
    """A job moved to the dead-letter table after it could not be processed."""

    id: str = NIL_JOB_ID
    job_id: str = NIL_JOB_ID
    queue: str = ""
    name: str = ""
    payload: str = ""
    reason: str = ""
    failed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    connection: str = ""
    exception: str = ""


@runtime_checkable
class SQLClient(Protocol):
    """A client that owns an SQLite connection."""

    @property
    def db(self) -> sqlite3.Connection: ...

    def close(self) -> None: ...


@runtime_checkable
class PoolClient(Protocol):
    """A client that owns a query pool and can hand out a transaction manager."""

    @property
    def pool(self) -> Any: ...

    def close(self) -> None: ...

    def tx_pool(self) -> Any: ...