import pytest

from outboxstore.picodata.client import PicodataClient


class _Pool:
    def __init__(self):
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


def test_pool_is_exposed():
    pool = _Pool()
    assert PicodataClient(pool).pool is pool


def test_close_closes_pool():
    pool = _Pool()
    PicodataClient(pool).close()
    assert pool.close_calls == 1


def test_context_manager_closes_pool():
    pool = _Pool()
    with PicodataClient(pool) as client:
        assert client.pool is pool
    assert pool.close_calls == 1


def test_tx_pool_is_bound_to_pool():
    pool = _Pool()
    manager = PicodataClient(pool).tx_pool()
    assert manager.pool is pool
    assert manager.run_in_tx(lambda: 42) == 42


def test_tx_pool_without_pool_is_not_configured():
    with pytest.raises(RuntimeError):
        PicodataClient(None).tx_pool().run_in_tx(lambda: 1)