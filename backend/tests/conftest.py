import os
import sys

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.cache.keys import KeySpace  # noqa: E402
from backend.tests.cache_fakes import FailingCache, MemoryCache  # noqa: E402
from backend.tests.fake_db import FakeDB  # noqa: E402


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def failing_cache():
    return FailingCache()


@pytest.fixture
def keyspace():
    return KeySpace("test")


@pytest.fixture
def user_id(db):
    return db.add_user()
