"""Storage of queued outbox jobs in a Picodata table."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from outboxstore.models import DEFAULT_QUEUE, Job, NoJobsError, new_job_id
from outboxstore.picodata import transaction
from outboxstore.sqlite.jobs_repo import _is_zero_id, _select_table

TABLE_NAME = "outbox_jobs"

_COLUMNS = "id, queue, name, payload, attempts, reserved_at, available_at, created_at"


def _to_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime, an ISO-8601 string or None from the driver."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise TypeError(f"cannot read {value!r} as a datetime")


def _scan_job(row: Sequence[Any]) -> Job:
    job_id, queue, name, payload, attempts, reserved_at, available_at, created_at = row
    return Job(
        id=str(job_id),
        queue=queue,
        name=name,
        payload=payload,
        attempts=int(attempts),
        reserved_at=_to_datetime(reserved_at),
        available_at=_to_datetime(available_at),
        created_at=_to_datetime(created_at),
    )


class PoolRepo:
    """Common plumbing: picks the active transaction or the client's pool."""

    def __init__(self, client: Any, default_table: str, table_names: Sequence[Optional[str]]) -> None:
        if client is None:
            raise ValueError(f"{default_table}: client is nil")
        self._client = client
        self.table_name = _select_table(default_table, table_names)

    def _executor(self) -> Any:
        tx = transaction.current_tx()
        return tx if tx is not None else self._client.pool

    def _execute(self, query: str, *args: Any) -> int:
        return self._executor().execute(query, *args)

    def _query(self, query: str, *args: Any) -> list:
        return list(self._executor().query(query, *args))

    def _query_row(self, query: str, *args: Any) -> Any:
        return next(iter(self._executor().query(query, *args)), None)

    def _count(self, query: str, *args: Any) -> int:
        row = self._query_row(query, *args)
        return int(row[0]) if row is not None else 0


class JobsRepo(PoolRepo):
    """Queue of pending jobs kept in a Picodata table."""

    def __init__(self, client: Any, *table_names: Optional[str]) -> None:
        if client is None:
            raise ValueError("outbox_jobs_failed: client is nil")
        super().__init__(client, TABLE_NAME, table_names)

    def create_job(self, name: str, payload: str, available_at: datetime) -> str:
        """Insert a new job and return its identifier."""
        query = (
            f"INSERT INTO {self.table_name} (\n\t{_COLUMNS}\n"
            ") VALUES ($1, $2, $3, $4, 0,  NULL, $5, $6);"
        )
        job_id = new_job_id()
        now = datetime.now(timezone.utc)
        self._execute(query, job_id, DEFAULT_QUEUE, name, payload, available_at, now)
        return job_id

    def find_and_reserve_job(self, now: datetime, until: datetime) -> Job:
        """Reserve an available job until *until*; raise NoJobsError if none is ready."""
        query_rows = (
            f"SELECT {_COLUMNS} FROM {self.table_name}\n"
            "\tWHERE available_at <= $1 AND (reserved_at IS NULL OR reserved_at <= $1) limit 10;"
        )
        query_update = (
            f"UPDATE {self.table_name}\n"
            "SET attempts = attempts + 1, reserved_at = $3\n"
            "WHERE id = $1 and attempts = $2;"
        )

        for row in self._query(query_rows, now):
            job = _scan_job(row)
            job.reserved_at = until
            job.attempts += 1
            if self._execute(query_update, job.id, job.attempts - 1, until) == 0:
                continue
            return job

        raise NoJobsError()

    def delete_job(self, job_id: str) -> int:
        """Delete a job and return the number of rows removed."""
        return self._execute(f"DELETE FROM {self.table_name} WHERE id = $1;", str(job_id))

    def get_by_id(self, job_id: str) -> Job:
        """Return the job with *job_id*; raise NoJobsError if it does not exist."""
        if _is_zero_id(job_id):
            raise ValueError("jobs.repo.GetByID: invalid id")
        row = self._query_row(
            f"SELECT {_COLUMNS} FROM {self.table_name} WHERE id = $1;", str(job_id)
        )
        if row is None:
            raise NoJobsError()
        return _scan_job(row)

    def count_light(self) -> int:
        return self.count_exact()

    def count(self) -> int:
        return self.count_exact()

    def count_exact(self) -> int:
        """Return the number of stored jobs."""
        return self._count(f"SELECT COUNT(*) FROM {self.table_name};")

    def count_available(self, now: datetime) -> int:
        """Return the number of jobs that could be reserved at *now*."""
        query = (
            f"SELECT COUNT(*) FROM {self.table_name} "
            "WHERE available_at <= $1 AND (reserved_at IS NULL OR reserved_at <= $1);"
        )
        return self._count(query, now)

    def count_reserved(self, now: datetime) -> int:
        """Return the number of jobs whose reservation outlasts *now*."""
        return self._count(f"SELECT COUNT(*) FROM {self.table_name} WHERE reserved_at > $1;", now)

    def all(self) -> list[Job]:
        """Return up to 100 jobs, newest first."""
        query = (
            f"SELECT {_COLUMNS}\nFROM {self.table_name}\n"
            "ORDER BY created_at DESC\nLIMIT 100;"
        )
        return [_scan_job(row) for row in self._query(query)]

    def list_paged(self, limit: int, before: datetime) -> list[Job]:
        """Return up to *limit* jobs created before *before*, newest first."""
        if limit <= 0:
            limit = 10
        query = (
            f"SELECT {_COLUMNS}\nFROM {self.table_name}\n"
            "WHERE created_at < $1\nORDER BY created_at DESC\n"
            f"LIMIT {int(limit)};"
        )
        return [_scan_job(row) for row in self._query(query, before)]