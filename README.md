# outboxstore

Storage backends for a transactional outbox. The package stores pending jobs
in one table and failed jobs in a second, dead-letter table. It has two
backends:

* **SQLite** (`outboxstore.sqlite`). It uses the standard library's `sqlite3`
  and stores timestamps as Unix milliseconds.
* **Picodata** (`outboxstore.picodata`). You supply the client object that
  executes SQL. The package has no dependency on a Picodata driver.

The package has no runtime dependencies.

## Installation

```
pip install outboxstore
```

To run the tests:

```
pip install "outboxstore[test]"
pytest
```

## Models

`outboxstore.models` defines the following:

* `Job`: a dataclass with the fields `id`, `queue`, `name`, `payload`,
  `attempts`, `reserved_at`, `available_at` and `created_at`.
* `JobFailed`: a dataclass with the fields `id`, `job_id`, `queue`, `name`,
  `payload`, `reason`, `failed_at`, `created_at`, `connection` and
  `exception`.
* `NoJobsError`: a subclass of `LookupError`. It is raised when a lookup finds
  no row, or when no job is ready to be reserved.
* `new_job_id()`: returns a random UUID as text.
* `NIL_JOB_ID`: the all-zero UUID.
* `SQLClient` and `PoolClient`: protocols that describe the clients the
  repositories accept.

## SQLite

```python
import logging
from datetime import datetime, timedelta, timezone

from outboxstore.models import NoJobsError
from outboxstore.sqlite import migrator
from outboxstore.sqlite.jobs_failed_repo import JobsFailedRepo
from outboxstore.sqlite.jobs_repo import JobsRepo
from outboxstore.sqlite.storage import create
from outboxstore.sqlite.transaction import TransactionManager

log = logging.getLogger("app")

with create("outbox.db") as client:
    migrator.run(client.db, log, command="up", directory="migrations")

    jobs = JobsRepo(client)            # table "jobs" unless a name is given
    failed = JobsFailedRepo(client)    # table "jobs_failed" unless a name is given

    now = datetime.now(timezone.utc)
    job_id = jobs.create_job("send-email", "{}", now)

    try:
        job = jobs.find_and_reserve_job(now, now + timedelta(seconds=30))
    except NoJobsError:
        job = None

    if job is not None:
        failed.create_failed_job(job.id, job.name, job.payload, "handler error")
        jobs.delete_job(job.id)

    tm = TransactionManager(client.db, client.lock)
    tm.run_in_tx(lambda: jobs.create_job("a", "{}", now))
```

### Opening a database

`outboxstore.sqlite.storage.create(dsn, check_ping=True, log=None, ...)`
performs the following steps:

1. Validates its options through `SQLiteOptions.validate`. Invalid options
   raise `ValueError`, for example an empty DSN, `max_open_conns < 1` or
   `max_idle_conns < 0`.
2. Opens the database in autocommit mode.
3. Applies these pragmas:
   * `journal_mode=WAL`
   * `busy_timeout=5000`
   * `foreign_keys=ON`
   * `synchronous=NORMAL`
4. Runs `SELECT 1` as a ping if `check_ping` is set.

A DSN that starts with `file:` is opened as a URI.

The function returns a `SQLiteClient`. Its members are:

* `db`: the connection.
* `lock`: a re-entrant lock that the repositories share.
* `close()`: closes the connection. It is safe to call more than once.

The client is also a context manager.

The options `max_open_conns`, `max_idle_conns`, `conn_max_lifetime` and
`conn_max_idle_time` are validated and kept on `client.options`. Beyond that,
they change nothing, because the client holds a single connection.

### Transactions

`outboxstore.sqlite.transaction.TransactionManager(db, lock=None)` provides
`run_in_tx(fn)`. It behaves as follows:

* It begins a transaction, calls `fn()` and commits.
* If `fn` raises, it rolls back and re-raises the exception.
* If a transaction is already active in the current context, `fn` joins that
  transaction.

While a transaction is active, every repository call in that context uses it.
The active transaction is tracked in a context variable. `current_tx()` and
the `use_tx(conn)` context manager expose that variable.

When the repositories and the manager share one client, pass `client.lock` to
the manager so that all of them serialise on the same lock.

### Repositories

The SQLite `JobsRepo` stores `"queue"` as the queue name of new jobs. Its
`find_and_reserve_job(now, until)` method:

* Runs in its own `BEGIN IMMEDIATE` transaction, unless a transaction is
  already active.
* Selects jobs that are available at `now` and not reserved past `now`. The
  selection is ordered by `available_at`, then `created_at`, and limited to
  10 rows.
* Reserves the first selected job until `until` and increments its attempt
  count.

Naive datetimes are taken as local time. Datetimes read back from the
database are UTC-aware.

## Repository methods

The two backends provide the same methods.

`JobsRepo(client, *table_names)` provides:

* `create_job(name, payload, available_at)`: returns the new job's id.
* `find_and_reserve_job(now, until)`: raises `NoJobsError` when no job is
  ready.
* `delete_job(job_id)`: returns the number of rows deleted.
* `get_by_id(job_id)`: raises `ValueError` for an empty or all-zero id, and
  `NoJobsError` when the job is missing.
* `all()`: returns up to 100 jobs, newest first.
* `list_paged(limit, before)`: returns up to `limit` jobs created before
  `before`, newest first. A `limit` of 0 or less means 10.
* `count()`, `count_light()`, `count_exact()`: all three return the exact
  number of rows.
* `count_available(now)`
* `count_reserved(now)`

`JobsFailedRepo(client, *table_names)` provides:

* `create_failed_job(job_id, name, payload, reason)`
* `create(model)`: stores a `JobFailed` under a fresh id. The SQLite backend
  requires `failed_at` and `created_at`.
* `get_by_id(record_id)`
* `find_by_job_id(job_id)`: returns the latest failure recorded for a job.
* `all()`
* `list_paged(limit, before)`
* `delete(record_id)`
* the three count methods.

For both classes, the first non-empty name in `table_names` overrides the
default table name. If `client` is `None`, the constructor raises
`ValueError`.

## SQLite migrations

`outboxstore.sqlite.migrator.run(db, log=None, command="status", directory="migrations", args=None)`
applies versioned files named `<version>_<description>.sql`.

Each file uses these annotations:

* `-- +goose Up` and `-- +goose Down` start the up and down sections.
* `-- +goose StatementBegin` and `-- +goose StatementEnd` enclose a
  statement that contains semicolons.
* `-- +goose NO TRANSACTION` turns off the transaction for that file.

Applied versions are recorded in the table `goose_db_version`.

The supported commands are:

| Command | Effect |
| --- | --- |
| `up` | Applies all pending migrations. |
| `up-to <v>` | Applies pending migrations up to version `<v>`. |
| `up-by-one` | Applies the next pending migration. |
| `down` | Rolls back the current version. |
| `down-to <v>` | Rolls back until the current version is `<v>`. |
| `redo` | Rolls back the current version and applies it again. |
| `reset` | Rolls back every applied version. |
| `status` | Logs each migration as applied or pending. |
| `version` | Logs the current version. |

Errors behave as follows:

* If the directory holds no migration files, the fact is logged and `run`
  returns normally.
* Any other failure raises `RuntimeError("failed to run database migrations: ...")`.

`load_migrations(directory)` returns the parsed `SqlMigration` objects sorted
by version. When there are no files, it raises `NoMigrationFilesError`.

## Picodata

The Picodata modules work with any client that has the following members:

* a `pool` attribute;
* `close()`;
* `tx_pool()`.

The pool itself must provide:

* `execute(query, *args)`: runs a statement and returns the number of rows
  affected;
* `query(query, *args)`: runs a query and returns an iterable of row tuples;
* `close()`.

`outboxstore.picodata.client.PicodataClient(pool)` wraps such a pool. Its
members are:

* `pool`: the wrapped pool.
* `close()`: closes the pool.
* `tx_pool()`: returns a `TransactionManager` bound to the pool.

The client is also a context manager.

`outboxstore.picodata.transaction.TransactionManager.run_in_tx(fn)` calls
`fn()` directly, without BEGIN or COMMIT. The Picodata client has no
connection-bound transactions, so writes made inside `fn` are not atomic. If
the manager has no pool, `run_in_tx` raises `RuntimeError`.

`current_tx()` and `use_tx(executor)` let you route repository calls through
an `Executor` of your own. An `Executor` is any object that provides `execute`
and `query`.

The Picodata repositories, `outboxstore.picodata.jobs_repo.JobsRepo` and
`outboxstore.picodata.jobs_failed_repo.JobsFailedRepo`, differ from the SQLite
ones in these ways:

* Their default tables are `outbox_jobs` and `outbox_jobs_failed`.
* They use `$n` placeholders.
* They pass datetimes to the driver unchanged. When reading, they also accept
  ISO-8601 strings.
* They record `"default"` as the queue name.

`outboxstore.picodata.log_adapter.AdapterLog(logger=None)` forwards driver log
messages to a standard `logging.Logger`:

* `log(level, msg, *args)` emits the message if `level` is at or below the
  threshold. The message is formatted with `%`.
* The threshold defaults to `LogLevel.WARN`.
* `set_level(level)` changes the threshold. It raises `ValueError` for an
  unknown level.
* The levels are `NONE`, `ERROR`, `WARN`, `INFO` and `DEBUG`.

### Picodata migrations

`outboxstore.picodata.migrator.run(client, log=None, command="status", directory="migrations", table_name="picodata_db_version", steps=1, args=None, table_replacements=None)`
applies files named `<version>_<name>.sql`. Each file must contain a
`-- pico.UP` section and may contain a `-- pico.DOWN` section after it.
Statements are split at lines that end with `;`.

Before parsing, each key of `table_replacements` is replaced by its value
throughout every file. Migrations are sorted by version, then by name.

The bookkeeping table is created if it is missing. Its name may contain only
ASCII letters, digits and underscores, and it must not start with a digit. A
blank name falls back to the default.

The supported commands are:

* `status`: logs each migration as `applied`, `rolled_back`, `pending` or
  `assumed_applied`. A migration is `assumed_applied` when it has no record
  but its version is at or below the highest applied version. The command
  also warns about recorded versions that have no file.
* `up`: applies pending migrations. It skips a migration when:
  * its version is already applied;
  * its name is already applied;
  * its version is at or below the highest applied version.
* `down`: rolls back `steps` applied migrations, newest first. Migrations
  without a DOWN section are skipped with a warning and do not count as a
  step.
* `reset`: rolls back every applied or assumed-applied migration.

Any other command raises `ValueError`.

The helper functions `sanitize_table_name`, `parse_migration_version`,
`parse_migration`, `split_statements` and `read_migrations` are public.

## What the package does not do

* It contains no worker or service that runs jobs, retries them or moves them
  to the dead-letter table. It provides only the storage that such a service
  would use.
* It ships no migration files for the job tables. You must supply your own
  schema in the migrations directory.
* It includes no Picodata driver and cannot open a connection to a Picodata
  cluster itself.
* It offers no command-line tool.