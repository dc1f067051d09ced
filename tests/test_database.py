import threading

import psycopg2
import pytest
from psycopg2.extensions import TRANSACTION_STATUS_IDLE
from psycopg2.pool import ThreadedConnectionPool

from wyzly.database import Database


class FakeConnection:
    """Stands in for a psycopg2 connection and records overlapping use"""

    def __init__(self, overlaps):
        self.closed = False
        self.info = type("Info", (), {"transaction_status": TRANSACTION_STATUS_IDLE})()
        self._active = 0
        self._guard = threading.Lock()
        self._overlaps = overlaps

    def get_transaction_status(self):
        return TRANSACTION_STATUS_IDLE

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def enter(self):
        with self._guard:
            self._active += 1
            if self._active > 1:
                self._overlaps.append(self)

    def leave(self):
        with self._guard:
            self._active -= 1

    def commit(self):
        pass

    def rollback(self):
        pass

    def close(self):
        self.closed = True


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        self.conn.enter()
        return self

    def __exit__(self, *exc):
        self.conn.leave()
        return False

    def execute(self, query, params=None):
        self.rowcount = 1


@pytest.fixture
def overlaps():
    return []


@pytest.fixture
def postgres(monkeypatch, overlaps):
    monkeypatch.setattr(psycopg2, "connect", lambda *args, **kwargs: FakeConnection(overlaps))
    database = Database("postgresql://wyzly@localhost/wyzly", minconn=1, maxconn=10)
    yield database
    database.close()


def test_postgres_uses_thread_safe_pool(postgres):
    assert isinstance(postgres._pool, ThreadedConnectionPool)


def test_transactions_from_many_threads_never_share_a_connection(postgres, overlaps):
    errors = []
    start = threading.Barrier(8)

    def worker():
        start.wait()
        try:
            for _ in range(500):
                with postgres.transaction() as cur:
                    cur.execute("SELECT 1")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert overlaps == []


def test_sqlite_rolls_back_failed_transaction(db):
    with pytest.raises(RuntimeError):
        with db.transaction() as cur:
            cur.insert("users", {"email": "a@example.com", "username": "a", "password_hash": "x"})
            raise RuntimeError("boom")

    assert db.execute_query("SELECT COUNT(*) AS count FROM users", fetch_one=True)["count"] == 0
