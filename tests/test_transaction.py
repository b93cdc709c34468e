import pytest

from outboxstore.sqlite.storage import create
from outboxstore.sqlite.transaction import TransactionManager, current_tx, use_tx


@pytest.fixture
def client(tmp_path):
    with create(str(tmp_path / "tx.db")) as c:
        c.db.execute("CREATE TABLE t (v INTEGER);")
        yield c


def _count(db):
    return db.execute("SELECT COUNT(*) FROM t;").fetchone()[0]


def test_commit_persists_and_returns_result(client):
    manager = TransactionManager(client.db)

    def work():
        client.db.execute("INSERT INTO t (v) VALUES (1);")
        return "done"

    assert manager.run_in_tx(work) == "done"
    assert client.db.in_transaction is False
    assert _count(client.db) == 1


def test_error_rolls_back_and_propagates(client):
    manager = TransactionManager(client.db)

    def work():
        client.db.execute("INSERT INTO t (v) VALUES (1);")
        raise KeyError("boom")

    with pytest.raises(KeyError):
        manager.run_in_tx(work)
    assert client.db.in_transaction is False
    assert _count(client.db) == 0


def test_tx_is_visible_inside_and_cleared_after(client):
    manager = TransactionManager(client.db)
    seen = manager.run_in_tx(lambda: (current_tx(), client.db.in_transaction))
    assert seen == (client.db, True)
    assert current_tx() is None


def test_nested_call_joins_outer_transaction(client):
    manager = TransactionManager(client.db)

    def inner():
        client.db.execute("INSERT INTO t (v) VALUES (2);")
        return current_tx()

    def outer():
        client.db.execute("INSERT INTO t (v) VALUES (1);")
        joined = manager.run_in_tx(inner)
        raise ValueError(joined is client.db)

    with pytest.raises(ValueError) as info:
        manager.run_in_tx(outer)
    assert info.value.args == (True,)
    assert _count(client.db) == 0


def test_use_tx_restores_previous_value(client):
    assert current_tx() is None
    with use_tx(client.db) as tx:
        assert tx is client.db
        assert current_tx() is client.db
    assert current_tx() is None


def test_unconfigured_manager_raises():
    with pytest.raises(RuntimeError, match="not configured"):
        TransactionManager(None).run_in_tx(lambda: None)