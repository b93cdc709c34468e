from datetime import datetime, timedelta, timezone

import pytest

from outboxstore.models import NIL_JOB_ID, JobFailed, NoJobsError, new_job_id
from outboxstore.sqlite.jobs_failed_repo import JobsFailedRepo
from outboxstore.sqlite.storage import create
from outboxstore.sqlite.transaction import TransactionManager

SCHEMA = """
CREATE TABLE jobs_failed (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    queue TEXT NOT NULL,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,
    reason TEXT NOT NULL,
    failed_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    connection TEXT NOT NULL,
    exception TEXT NOT NULL
);
"""


@pytest.fixture
def client(tmp_path):
    c = create(str(tmp_path / "failed.db"))
    c.db.execute(SCHEMA)
    yield c
    c.close()


@pytest.fixture
def repo(client):
    return JobsFailedRepo(client)


def _now():
    return datetime.now(timezone.utc).replace(microsecond=0)


def test_requires_client():
    with pytest.raises(ValueError, match="client is nil"):
        JobsFailedRepo(None)


def test_create_failed_job(repo):
    job_id = new_job_id()
    failed_id = repo.create_failed_job(job_id, "job_name", "job_payload", "any reason")

    record = repo.get_by_id(failed_id)
    assert record.id == failed_id
    assert record.job_id == job_id
    assert record.name == "job_name"
    assert record.payload == "job_payload"
    assert record.reason == "any reason"
    assert record.queue == "queue"
    assert record.failed_at == record.created_at


def test_create_failed_job_multiple(repo):
    for _ in range(3):
        repo.create_failed_job(new_job_id(), "job_name", "job_payload", "any reason")

    assert repo.count_exact() == 3
    assert repo.count_light() == repo.count_exact()
    assert repo.count() == repo.count_exact()


def test_create_stores_failed_at_and_created_at(repo):
    failed_at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    created_at = datetime(2026, 1, 2, 4, 5, 6, tzinfo=timezone.utc)
    model = JobFailed(
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

    got = repo.get_by_id(repo.create(model))

    assert got.failed_at == failed_at
    assert got.created_at == created_at
    assert (got.connection, got.exception) == ("conn", "exc")


def test_create_requires_times(repo):
    with pytest.raises(ValueError, match="required"):
        repo.create(JobFailed(job_id=new_job_id(), name="job"))


def test_get_by_id_errors(repo):
    with pytest.raises(ValueError, match="jobs_failed.repo.GetByID: invalid id"):
        repo.get_by_id(NIL_JOB_ID)
    with pytest.raises(NoJobsError):
        repo.get_by_id(new_job_id())


def test_find_by_job_id_returns_latest(repo):
    job_id = new_job_id()
    base = _now()
    for reason, offset in (("first", 2), ("latest", 0), ("second", 1)):
        repo.create(JobFailed(
            job_id=job_id, queue="q", name="job", payload="p", reason=reason,
            failed_at=base - timedelta(minutes=offset), created_at=base,
        ))

    assert repo.find_by_job_id(job_id).reason == "latest"
    with pytest.raises(ValueError, match="FindByJobID"):
        repo.find_by_job_id("")
    with pytest.raises(NoJobsError):
        repo.find_by_job_id(new_job_id())


def test_delete(repo):
    failed_id = repo.create_failed_job(new_job_id(), "job_name", "job_payload", "any reason")

    assert repo.delete(failed_id) == 1
    with pytest.raises(NoJobsError):
        repo.get_by_id(failed_id)


def test_delete_no_jobs(repo):
    assert repo.delete(new_job_id()) == 0


def test_list_paged(repo):
    now = _now()
    for name, offset in (("newest", 0), ("middle", 1), ("oldest", 2)):
        at = now - timedelta(minutes=offset)
        repo.create(JobFailed(
            job_id=new_job_id(), queue="q", name=name, payload="p", reason="r",
            failed_at=at, created_at=at,
        ))

    page1 = repo.list_paged(2, now + timedelta(seconds=1))
    assert [record.name for record in page1] == ["newest", "middle"]

    cursor = page1[-1].created_at - timedelta(microseconds=1)
    page2 = repo.list_paged(2, cursor)
    assert [record.name for record in page2] == ["oldest"]

    assert [record.name for record in repo.all()] == ["newest", "middle", "oldest"]


def test_rolled_back_transaction_discards_record(client, repo):
    manager = TransactionManager(client.db, client.lock)

    def work():
        repo.create_failed_job(new_job_id(), "job_name", "p", "r")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        manager.run_in_tx(work)
    assert repo.count_exact() == 0