from contextlib import contextmanager

from backend.app import db as app_db
from backend.app import main


class _StubConn:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _StubPool:
    closed = True

    def __init__(self):
        self.opened = 0
        self.checkouts = 0

    def open(self):
        self.opened += 1

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield _StubConn()


def test_startup_opens_the_pool_once(monkeypatch):
    pool = _StubPool()
    monkeypatch.setattr(app_db, "_pool", pool)
    monkeypatch.setattr(main, "_db_health", lambda: (True, None))

    main._startup()

    assert pool.opened == 1


def test_checkout_never_opens_the_pool(monkeypatch):
    pool = _StubPool()
    monkeypatch.setattr(app_db, "_pool", pool)

    for _ in range(3):
        with app_db.get_conn() as conn:
            assert isinstance(conn, _StubConn)

    assert pool.checkouts == 3
    assert pool.opened == 0
