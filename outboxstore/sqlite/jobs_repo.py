"""Storage of queued outbox jobs in SQLite."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence

from outboxstore.models import NIL_JOB_ID, Job, NoJobsError, new_job_id
from outboxstore.sqlite import transaction

TABLE_NAME = "jobs"
SQLITE_QUEUE = "queue"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_COLUMNS = "id, queue, name, payload, attempts, reserved_at, available_at, created_at"


def _to_millis(moment: datetime) -> int:
    """Milliseconds since the Unix epoch; naive values are taken as local time."""
    return (moment.astimezone(timezone.utc) - _EPOCH) // timedelta(milliseconds=1)


def _from_millis(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=millis)


def _select_table(default: str, names: Iterable[Optional[str]]) -> str:
    return next((name for name in names if name), default)


def _is_zero_id(job_id: Any) -> bool:
    return not job_id or str(job_id) == NIL_JOB_ID


def _client_lock(client: Any) -> Any:
    lock = getattr(client, "lock", None)
    return lock if lock is not None else threading.RLock()


def _rollback_quietly(db: sqlite3.Connection) -> None:
    try:
        db.execute("ROLLBACK;")
    except sqlite3.Error:
        pass


def _scan_job(row: Sequence[Any]) -> Job:
    job_id, queue, name, payload, attempts, reserved_ms, available_ms, created_ms = row
    return Job(
        id=job_id,
        queue=queue,
        name=name,
        payload=payload,
        attempts=attempts,
        reserved_at=None if reserved_ms is None else _from_millis(reserved_ms),
        available_at=_from_millis(available_ms),
        created_at=_from_millis(created_ms),
    )


class JobsRepo:
    """Queue of pending jobs kept in an SQLite table; times are stored as epoch milliseconds."""

    def __init__(self, client: Any, *table_names: Optional[str]) -> None:
        if client is None:
            raise ValueError("sqlite jobsrepo: client is nil")
        self._client = client
        self.table_name = _select_table(TABLE_NAME, table_names)
        self._lock = _client_lock(client)

    def _executor(self) -> sqlite3.Connection:
        tx = transaction.current_tx()
        return tx if tx is not None else self._client.db

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list:
        with self._lock:
            return self._executor().execute(query, params).fetchall()

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Any:
        with self._lock:
            return self._executor().execute(query, params).fetchone()

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self._lock:
            return self._executor().execute(query, params).rowcount

    def create_job(self, name: str, payload: str, available_at: datetime) -> str:
        """Insert a new job and return its identifier."""
        query = (
            f"INSERT INTO {self.table_name} ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, 0, NULL, ?, ?);"
        )
        job_id = new_job_id()
        now_ms = _to_millis(datetime.now(timezone.utc))
        self._execute(
            query, (job_id, SQLITE_QUEUE, name, payload, _to_millis(available_at), now_ms)
        )
        return job_id

    def find_and_reserve_job(self, now: datetime, until: datetime) -> Job:
        """Reserve the first available job until *until*; raise NoJobsError if none is ready."""
        tx = transaction.current_tx()
        if tx is not None:
            with self._lock:
                return self._find_and_reserve(tx, now, until)

        db = self._client.db
        with self._lock:
            db.execute("BEGIN IMMEDIATE;")
            try:
                job = self._find_and_reserve(db, now, until)
            except BaseException:
                _rollback_quietly(db)
                raise
            try:
                db.execute("COMMIT;")
            except sqlite3.Error:
                _rollback_quietly(db)
                raise
            return job

    def _find_and_reserve(self, db: sqlite3.Connection, now: datetime, until: datetime) -> Job:
        query_rows = (
            f"SELECT {_COLUMNS} FROM {self.table_name} "
            "WHERE available_at <= ? AND (reserved_at IS NULL OR reserved_at <= ?) "
            "ORDER BY available_at ASC, created_at ASC LIMIT 10;"
        )
        query_update = (
            f"UPDATE {self.table_name} SET attempts = attempts + 1, reserved_at = ? "
            "WHERE id = ? AND attempts = ? AND (reserved_at IS NULL OR reserved_at <= ?);"
        )
        now_ms = _to_millis(now)
        until_ms = _to_millis(until)

        for row in db.execute(query_rows, (now_ms, now_ms)).fetchall():
            job = _scan_job(row)
            cursor = db.execute(query_update, (until_ms, job.id, job.attempts, now_ms))
            if cursor.rowcount == 0:
                continue
            job.attempts += 1
            job.reserved_at = _from_millis(until_ms)
            return job

        raise NoJobsError()

    def delete_job(self, job_id: str) -> int:
        """Delete a job and return the number of rows removed."""
        return self._execute(f"DELETE FROM {self.table_name} WHERE id = ?;", (str(job_id),))

    def get_by_id(self, job_id: str) -> Job:
        """Return the job with *job_id*; raise NoJobsError if it does not exist."""
        if _is_zero_id(job_id):
            raise ValueError("jobs.repo.GetByID: invalid id")
        row = self._fetchone(
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE id = ?;", (str(job_id),)
        )
        if row is None:
            raise NoJobsError()
        return _scan_job(row)

    def all(self) -> list[Job]:
        """Return up to 100 jobs, newest first."""
        rows = self._fetchall(
            f"SELECT {_COLUMNS} FROM {self.table_name} ORDER BY created_at DESC LIMIT 100;"
        )
        return [_scan_job(row) for row in rows]

    def count_light(self) -> int:
        return self.count_exact()

    def count(self) -> int:
        return self.count_exact()

    def count_exact(self) -> int:
        """Return the number of stored jobs."""
        return self._fetchone(f"SELECT COUNT(*) FROM {self.table_name};")[0]

    def count_available(self, now: datetime) -> int:
        """Return the number of jobs that could be reserved at *now*."""
        now_ms = _to_millis(now)
        query = (
            f"SELECT COUNT(*) FROM {self.table_name} "
            "WHERE available_at <= ? AND (reserved_at IS NULL OR reserved_at <= ?);"
        )
        return self._fetchone(query, (now_ms, now_ms))[0]

    def count_reserved(self, now: datetime) -> int:
        """Return the number of jobs whose reservation outlasts *now*."""
        query = f"SELECT COUNT(*) FROM {self.table_name} WHERE reserved_at > ?;"
        return self._fetchone(query, (_to_millis(now),))[0]

    def list_paged(self, limit: int, before: datetime) -> list[Job]:
        """Return up to *limit* jobs created before *before*, newest first."""
        if limit <= 0:
            limit = 10
        query = (
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE created_at < ? "
            f"ORDER BY created_at DESC LIMIT {int(limit)};"
        )
        return [_scan_job(row) for row in self._fetchall(query, (_to_millis(before),))]