import logging
import sqlite3

import pytest

from outboxstore.sqlite.storage import SQLiteClient, SQLiteOptions, create


def test_create_invalid_options():
    with pytest.raises(ValueError, match="nil dsn"):
        create("")


def test_create_and_ping(tmp_path):
    dsn = str(tmp_path / "test.db")
    client = create(dsn)
    try:
        client.db.execute("CREATE TABLE IF NOT EXISTS t (id INTEGER PRIMARY KEY);")
        client.db.execute("INSERT INTO t (id) VALUES (1);")
        assert client.db.execute("SELECT COUNT(*) FROM t;").fetchone()[0] == 1
    finally:
        client.close()
    assert client.closed


def test_pragmas_are_applied(tmp_path):
    with create(str(tmp_path / "p.db")) as client:
        db = client.db
        assert db.execute("PRAGMA journal_mode;").fetchone()[0] == "wal"
        assert db.execute("PRAGMA busy_timeout;").fetchone()[0] == 5000
        assert db.execute("PRAGMA foreign_keys;").fetchone()[0] == 1
        assert db.execute("PRAGMA synchronous;").fetchone()[0] == 1


def test_create_without_ping_keeps_options(tmp_path):
    log = logging.getLogger("test-storage")
    with create(str(tmp_path / "np.db"), check_ping=False, log=log, max_open_conns=3) as client:
        assert client.options.check_ping is False
        assert client.options.log is log
        assert client.options.max_open_conns == 3


def test_closed_client_refuses_use(tmp_path):
    client = create(str(tmp_path / "c.db"))
    client.close()
    client.close()
    with pytest.raises(sqlite3.ProgrammingError):
        client.db.execute("SELECT 1;")


def test_data_survives_reopen(tmp_path):
    dsn = str(tmp_path / "r.db")
    with create(dsn) as client:
        client.db.execute("CREATE TABLE t (v TEXT);")
        client.db.execute("INSERT INTO t (v) VALUES ('kept');")
    with create(dsn) as client:
        assert client.db.execute("SELECT v FROM t;").fetchall() == [("kept",)]


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_open_conns": 0}, "max open conns must be >= 1"),
        ({"max_idle_conns": -1}, "max idle conns must be >= 0"),
    ],
)
def test_create_rejects_bad_pool_sizes(tmp_path, kwargs, message):
    with pytest.raises(ValueError, match=message):
        create(str(tmp_path / "bad.db"), **kwargs)


def test_options_validate_rejects_missing_logger():
    with pytest.raises(ValueError, match="nil logger"):
        SQLiteOptions(dsn="x.db", log=None).validate()


def test_options_defaults():
    options = SQLiteOptions(dsn="x.db")
    options.validate()
    assert options.max_open_conns == 10
    assert options.max_idle_conns == 10
    assert options.check_ping is True


def test_client_wraps_given_connection():
    conn = sqlite3.connect(":memory:")
    client = SQLiteClient(conn, SQLiteOptions(dsn=":memory:"))
    assert client.db is conn
    client.close()
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1;")