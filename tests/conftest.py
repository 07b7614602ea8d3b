"""
Test fixtures for the TeachMe gamification ledger.

Provides a file-based SQLite store with the catalog seeded, a controllable
clock, an engine, provisioned students, and the Flask app/client.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


class Clock:
    """Callable clock the tests can move forward."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    """Open store on a fresh SQLite file with schema, migrations and catalog."""
    from database import GamificationStore, ensure_schema
    from seed_catalog import seed

    store = GamificationStore(
        str(tmp_path / "test.db"), busy_timeout=5.0, max_retries=3, retry_wait_max=0.01,
    )
    store.open()
    ensure_schema(store)
    seed(store)
    yield store
    store.close()


@pytest.fixture
def engine(store, clock):
    from cache_backend import InMemoryCache
    from gamification import GamificationEngine

    return GamificationEngine(store, InMemoryCache(), clock=clock, snapshot_interval=0)


@pytest.fixture
def make_student(engine, clock):
    """Provision users; students get a profile and zeroed streaks."""
    from database import to_iso

    def _make(user_id: str, name: str | None = None, role: str = "STUDENT", **kwargs):
        return engine.profiles.provision(
            user_id, name or user_id.title(), role, now=to_iso(clock()), **kwargs,
        )

    return _make


@pytest.fixture
def student(make_student):
    return make_student("stu-1", "Ada")


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "api.db"),
        "SECRET_KEY": "test-secret-key",
        "LOG_LEVEL": "WARNING",
    })
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_redis():
    """MagicMock redis client backed by a dict."""
    data: dict[str, bytes] = {}
    client = MagicMock()

    def _encode(value):
        return value if isinstance(value, bytes) else str(value).encode()

    def _incr(key):
        value = int(data.get(key, b"0")) + 1
        data[key] = _encode(value)
        return value

    client.get.side_effect = lambda key: data.get(key)
    client.setex.side_effect = lambda key, ttl, value: data.__setitem__(key, _encode(value))
    client.delete.side_effect = lambda key: data.pop(key, None)
    client.flushdb.side_effect = lambda: data.clear()
    client.incr.side_effect = _incr
    client.ping.return_value = True
    return client
