"""Storage of failed (dead-letter) outbox jobs in SQLite."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from outboxstore.models import JobFailed, NoJobsError, new_job_id
from outboxstore.sqlite import transaction
from outboxstore.sqlite.jobs_repo import (
    SQLITE_QUEUE,
    _client_lock,
    _from_millis,
    _is_zero_id,
    _select_table,
    _to_millis,
)

TABLE_NAME = "jobs_failed"

_COLUMNS = (
    "id, job_id, queue, name, payload, reason, failed_at, created_at, connection, exception"
)


def _scan_job_failed(row: Sequence[Any]) -> JobFailed:
    (job_id, origin_id, queue, name, payload, reason,
     failed_ms, created_ms, connection, exception) = row
    return JobFailed(
        id=job_id,
        job_id=origin_id,
        queue=queue,
        name=name,
        payload=payload,
        reason=reason,
        failed_at=_from_millis(failed_ms),
        created_at=_from_millis(created_ms),
        connection=connection,
        exception=exception,
    )


class JobsFailedRepo:
    """Dead-letter table of jobs that could not be processed."""

    def __init__(self, client: Any, *table_names: Optional[str]) -> None:
        if client is None:
            raise ValueError("sqlite jobsfailedrepo: client is nil")
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

    def _insert_query(self) -> str:
        return (
            f"INSERT INTO {self.table_name} ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);"
        )

    def create_failed_job(self, job_id: str, name: str, payload: str, reason: str) -> str:
        """Record that *job_id* failed for *reason* and return the new record's identifier."""
        record_id = new_job_id()
        now_ms = _to_millis(datetime.now(timezone.utc))
        self._execute(
            self._insert_query(),
            (record_id, str(job_id), SQLITE_QUEUE, name, payload, reason, now_ms, now_ms, "", ""),
        )
        return record_id

    def create(self, model: JobFailed) -> str:
        """Store *model* under a fresh identifier and return that identifier."""
        if model.failed_at is None or model.created_at is None:
            raise ValueError("jobs_failed.repo.Create: failed_at and created_at are required")
        record_id = new_job_id()
        self._execute(
            self._insert_query(),
            (
                record_id,
                str(model.job_id),
                model.queue,
                model.name,
                model.payload,
                model.reason,
                _to_millis(model.failed_at),
                _to_millis(model.created_at),
                model.connection,
                model.exception,
            ),
        )
        return record_id

    def get_by_id(self, job_id: str) -> JobFailed:
        """Return the record with identifier *job_id*; raise NoJobsError if absent."""
        if _is_zero_id(job_id):
            raise ValueError("jobs_failed.repo.GetByID: invalid id")
        row = self._fetchone(
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE id = ?;", (str(job_id),)
        )
        if row is None:
            raise NoJobsError()
        return _scan_job_failed(row)

    def find_by_job_id(self, job_id: str) -> JobFailed:
        """Return the latest failure recorded for the original job *job_id*."""
        if _is_zero_id(job_id):
            raise ValueError("jobs_failed.repo.FindByJobID: invalid id")
        query = (
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE job_id = ? "
            "ORDER BY failed_at DESC LIMIT 1;"
        )
        row = self._fetchone(query, (str(job_id),))
        if row is None:
            raise NoJobsError()
        return _scan_job_failed(row)

    def all(self) -> list[JobFailed]:
        """Return up to 100 records, newest first."""
        rows = self._fetchall(
            f"SELECT {_COLUMNS} FROM {self.table_name} ORDER BY created_at DESC LIMIT 100;"
        )
        return [_scan_job_failed(row) for row in rows]

    def list_paged(self, limit: int, before: datetime) -> list[JobFailed]:
        """Return up to *limit* records created before *before*, newest first."""
        if limit <= 0:
            limit = 10
        query = (
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE created_at < ? "
            f"ORDER BY created_at DESC LIMIT {int(limit)};"
        )
        return [_scan_job_failed(row) for row in self._fetchall(query, (_to_millis(before),))]

    def delete(self, job_id: str) -> int:
        """Delete a record and return the number of rows removed."""
        return self._execute(f"DELETE FROM {self.table_name} WHERE id = ?;", (str(job_id),))

    def count_light(self) -> int:
        return self.count_exact()

    def count(self) -> int:
        return self.count_exact()

    def count_exact(self) -> int:
        """Return the number of stored records."""
        return self._fetchone(f"SELECT COUNT(*) FROM {self.table_name};")[0]