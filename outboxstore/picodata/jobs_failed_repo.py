"""Storage of failed (dead-letter) outbox jobs in a Picodata table."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from outboxstore.models import DEFAULT_QUEUE, JobFailed, NoJobsError, new_job_id
from outboxstore.picodata.jobs_repo import PoolRepo, _to_datetime
from outboxstore.sqlite.jobs_repo import _is_zero_id

TABLE_NAME = "outbox_jobs_failed"

_COLUMNS = (
    "id, job_id, queue, name, payload, reason, failed_at, created_at, connection, exception"
)


def _scan_job_failed(row: Sequence[Any]) -> JobFailed:
    (record_id, origin_id, queue, name, payload, reason,
     failed_at, created_at, connection, exception) = row
    return JobFailed(
        id=str(record_id),
        job_id=str(origin_id),
        queue=queue,
        name=name,
        payload=payload,
        reason=reason,
        failed_at=_to_datetime(failed_at),
        created_at=_to_datetime(created_at),
        connection=connection,
        exception=exception,
    )


class JobsFailedRepo(PoolRepo):
    """Dead-letter table of jobs that could not be processed."""

    def __init__(self, client: Any, *table_names: Optional[str]) -> None:
        super().__init__(client, TABLE_NAME, table_names)

    def create_failed_job(self, job_id: str, name: str, payload: str, reason: str) -> str:
        """Record that *job_id* failed for *reason* and return the new record's identifier."""
        query = (
            f"\nINSERT INTO {self.table_name} (\n    {_COLUMNS}\n"
            ") VALUES ($1, $2, $3, $4, $5, $6, $7, $7, $8, $9);\n"
        )
        record_id = new_job_id()
        now = datetime.now(timezone.utc)
        self._execute(
            query, record_id, str(job_id), DEFAULT_QUEUE, name, payload, reason, now, "", ""
        )
        return record_id

    def create(self, model: JobFailed) -> str:
        """Store *model* under a fresh identifier and return that identifier."""
        query = (
            f"\nINSERT INTO {self.table_name} (\n    {_COLUMNS}\n"
            ") VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10);\n"
        )
        record_id = new_job_id()
        self._execute(
            query,
            record_id,
            str(model.job_id),
            model.queue,
            model.name,
            model.payload,
            model.reason,
            model.failed_at,
            model.created_at,
            model.connection,
            model.exception,
        )
        return record_id

    def get_by_id(self, job_id: str) -> JobFailed:
        """Return the record with identifier *job_id*; raise NoJobsError if absent."""
        if _is_zero_id(job_id):
            raise ValueError("jobs_failed.repo.GetByID: invalid id")
        row = self._query_row(
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE id = $1;", str(job_id)
        )
        if row is None:
            raise NoJobsError()
        return _scan_job_failed(row)

    def find_by_job_id(self, job_id: str) -> JobFailed:
        """Return the latest failure recorded for the original job *job_id*."""
        if _is_zero_id(job_id):
            raise ValueError("jobs_failed.repo.FindByJobID: invalid id")
        query = (
            f"SELECT {_COLUMNS} FROM {self.table_name}\n"
            "WHERE job_id = $1\nORDER BY failed_at DESC\nLIMIT 1;"
        )
        row = self._query_row(query, str(job_id))
        if row is None:
            raise NoJobsError()
        return _scan_job_failed(row)

    def all(self) -> list[JobFailed]:
        """Return up to 100 records, newest first."""
        query = (
            f"SELECT {_COLUMNS} FROM {self.table_name}\n"
            "ORDER BY created_at DESC LIMIT 100;"
        )
        return [_scan_job_failed(row) for row in self._query(query)]

    def list_paged(self, limit: int, before: datetime) -> list[JobFailed]:
        """Return up to *limit* records created before *before*, newest first."""
        if limit <= 0:
            limit = 10
        query = (
            f"SELECT {_COLUMNS} FROM {self.table_name}\n"
            "WHERE created_at < $1\nORDER BY created_at DESC\n"
            f"LIMIT {int(limit)};"
        )
        return [_scan_job_failed(row) for row in self._query(query, before)]

    def delete(self, job_id: str) -> int:
        """Delete a record and return the number of rows removed."""
        return self._execute(f"DELETE FROM {self.table_name} WHERE id = $1;", str(job_id))

    def count_light(self) -> int:
        return self.count_exact()

    def count(self) -> int:
        return self.count_exact()

    def count_exact(self) -> int:
        """Return the number of stored records."""
        return self._count(f"SELECT COUNT(*) FROM {self.table_name};")