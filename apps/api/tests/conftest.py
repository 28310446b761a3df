"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database (DATABASE_URL=sqlite://)
with the schema created and dropped around every test. Redis and the
Celery broker are replaced by in-memory fakes so nothing leaves the process.
"""
import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

# Environment must be in place before any app module reads settings.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, SessionLocal, engine  # noqa: E402
from core.security import create_access_token  # noqa: E402
from models import User  # noqa: E402


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}
        self._sets: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None, px=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex * 1000
        if px:
            self._ttls[key] = px
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    def exists(self, key):
        return 1 if key in self._store else 0

    def incr(self, key):
        self._store[key] = int(self._store.get(key, 0)) + 1
        return self._store[key]

    def expire(self, key, seconds):
        self._ttls[key] = seconds * 1000
        return True

    def sadd(self, key, *members):
        bucket = self._sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    def smembers(self, key):
        return set(self._sets.get(key, set()))

    def spop(self, key, count=None):
        bucket = self._sets.get(key, set())
        if count is None:
            return bucket.pop() if bucket else None
        popped = [bucket.pop() for _ in range(min(count, len(bucket)))]
        return popped

    def ping(self):
        return True

    def expire_now(self, key):
        """Test helper: simulate the TTL of `key` elapsing."""
        self._store.pop(key, None)
        self._ttls.pop(key, None)


@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test.

    The StaticPool engine shares one in-memory connection, so sessions
    opened by request handlers see the same data.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def _isolate_scheduler(fake_redis):
    """Route recompute scheduling to FakeRedis and a mock enqueue."""
    enqueue = MagicMock()
    with patch("services.recompute_scheduler.get_redis_client", return_value=fake_redis), \
         patch("services.recompute_scheduler._enqueue", enqueue):
        yield enqueue


@pytest.fixture
def now():
    return datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def user(db_session):
    u = User(id=uuid4(), email=f"user_{uuid4()}@example.com", display_name="Test User", role="user")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def other_user(db_session):
    u = User(id=uuid4(), email=f"other_{uuid4()}@example.com", display_name="Other User", role="user")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def admin_user(db_session):
    u = User(id=uuid4(), email=f"admin_{uuid4()}@example.com", display_name="Admin", role="admin")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def auth_headers():
    """Bearer header factory for a given user."""
    def _headers(u: User) -> dict:
        token = create_access_token({"sub": str(u.id)})
        return {"Authorization": f"Bearer {token}"}
    return _headers
