import re
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from outboxstore.models import JobFailed, NoJobsError, new_job_id
from outboxstore.picodata.client import PicodataClient
from outboxstore.picodata.jobs_failed_repo import JobsFailedRepo
from outboxstore.picodata.transaction import use_tx

DDL = """
CREATE TABLE outbox_jobs_failed (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    queue TEXT NOT NULL,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,
    reason TEXT NOT NULL,
    failed_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    connection TEXT NOT NULL,
    exception TEXT NOT NULL
)
"""


class SqlitePool:
    """In-memory stand-in for a Picodata pool that speaks $N placeholders."""

    def __init__(self):
        self.db = sqlite3.connect(":memory:", isolation_level=None)
        self.db.execute(DDL)

    @staticmethod
    def _prepare(query, args):
        params = tuple(
            a.astimezone(timezone.utc).isoformat(timespec="microseconds")
            if isinstance(a, datetime)
            else a
            for a in args
        )
        return re.sub(r"\$(\d+)", r"?\1", query), params

    def execute(self, query, *args):
        sql, params = self._prepare(query, args)
        return self.db.execute(sql, params).rowcount

    def query(self, query, *args):
        sql, params = self._prepare(query, args)
        return self.db.execute(sql, params).fetchall()

    def close(self):
        self.db.close()


@pytest.fixture
def pool():
    p = SqlitePool()
    yield p
    p.close()


@pytest.fixture
def repo(pool):
    return JobsFailedRepo(PicodataClient(pool))


def _model(name, when, job_id=None):
    return JobFailed(
        job_id=job_id or new_job_id(),
        queue="q",
        name=name,
        payload="p",
        reason="r",
        failed_at=when,
        created_at=when,
    )


def test_nil_client_is_rejected():
    with pytest.raises(ValueError, match="outbox_jobs_failed"):
        JobsFailedRepo(None)


def test_create_failed_job(repo):
    origin = new_job_id()
    record_id = repo.create_failed_job(origin, "job_name", "job_payload", "any reason")
    record = repo.get_by_id(record_id)
    assert record.id == record_id
    assert record.job_id == origin
    assert record.name == "job_name"
    assert record.payload == "job_payload"
    assert record.reason == "any reason"
    assert record.queue == "default"
    assert record.connection == ""
    assert record.exception == ""
    assert record.failed_at == record.created_at


def test_create_failed_job_multiple(repo):
    for _ in range(3):
        repo.create_failed_job(new_job_id(), "job_name", "job_payload", "any reason")
    assert repo.count_exact() == 3
    assert repo.count_light() == 3
    assert repo.count() == 3


def test_create_stores_failed_at_and_created_at(repo):
    failed_at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    created_at = datetime(2026, 1, 2, 4, 5, 6, tzinfo=timezone.utc)
    record_id = repo.create(
        JobFailed(
            job_id=new_job_id(),
            queue="queue",
            name="job",
            payload="payload",
            reason="reason",
            failed_at=failed_at,
            created_at=created_at,
            connection="conn",
            exception="exc",
        )
    )
    got = repo.get_by_id(record_id)
    assert got.failed_at == failed_at
    assert got.created_at == created_at
    assert got.connection == "conn"
    assert got.exception == "exc"


def test_get_by_id_invalid_and_missing(repo):
    with pytest.raises(ValueError, match="invalid id"):
        repo.get_by_id("")
    with pytest.raises(NoJobsError):
        repo.get_by_id(new_job_id())


def test_find_by_job_id_returns_latest_failure(repo):
    origin = new_job_id()
    now = datetime.now(timezone.utc)
    repo.create(_model("first", now - timedelta(minutes=5), origin))
    repo.create(_model("second", now, origin))
    repo.create(_model("other", now + timedelta(minutes=1)))
    assert repo.find_by_job_id(origin).name == "second"


def test_find_by_job_id_invalid_and_missing(repo):
    with pytest.raises(ValueError, match="invalid id"):
        repo.find_by_job_id("")
    with pytest.raises(NoJobsError):
        repo.find_by_job_id(new_job_id())


def test_delete_job(repo):
    record_id = repo.create_failed_job(new_job_id(), "job_name", "job_payload", "any reason")
    assert repo.delete(record_id) == 1
    with pytest.raises(NoJobsError):
        repo.get_by_id(record_id)


def test_delete_job_no_jobs(repo):
    assert repo.delete(new_job_id()) == 0


def test_all_newest_first(repo):
    now = datetime.now(timezone.utc)
    repo.create(_model("middle", now - timedelta(minutes=1)))
    repo.create(_model("newest", now))
    repo.create(_model("oldest", now - timedelta(minutes=2)))
    assert [r.name for r in repo.all()] == ["newest", "middle", "oldest"]


def test_list_paged(repo):
    now = datetime.now(timezone.utc)
    repo.create(_model("newest", now))
    repo.create(_model("middle", now - timedelta(minutes=1)))
    repo.create(_model("oldest", now - timedelta(minutes=2)))

    page1 = repo.list_paged(2, now + timedelta(seconds=1))
    assert [r.name for r in page1] == ["newest", "middle"]

    cursor = page1[-1].created_at - timedelta(microseconds=1)
    page2 = repo.list_paged(2, cursor)
    assert [r.name for r in page2] == ["oldest"]


def test_list_paged_non_positive_limit_uses_default(repo):
    now = datetime.now(timezone.utc)
    for i in range(12):
        repo.create(_model(f"r{i}", now - timedelta(seconds=i)))
    assert len(repo.list_paged(-1, now + timedelta(seconds=1))) == 10


def test_active_tx_receives_queries(repo):
    other = SqlitePool()
    with use_tx(other):
        repo.create_failed_job(new_job_id(), "n", "p", "r")
        assert repo.count_exact() == 1
    assert repo.count_exact() == 0
    other.close()