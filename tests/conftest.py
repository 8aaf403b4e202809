"""
Shared pytest fixtures and configuration for all tests.
"""
import logging
import os

import fakeredis
import pytest
from hypothesis import settings, Verbosity, Phase

from session.redis_store import RedisSessionStore, current_millis
from session.manager import RedisSessionManager
from session.serializers import JsonSerializer

# Hypothesis profiles for property-based tests
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,
    print_blob=True,
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,  # Reproducible results in CI
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],  # Skip shrinking for speed
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> int:
        self.now += millis
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at the real current time, so Redis key TTLs lie in the future."""
    return FakeClock(current_millis())


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    """One in-memory Redis server shared by every node in a test."""
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server) -> fakeredis.FakeRedis:
    """Redis client bound to the shared fake server."""
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def store(redis_client, clock) -> RedisSessionStore:
    """Store adapter over the fake Redis."""
    return RedisSessionStore(redis_client, key_prefix="session:", clock=clock)


@pytest.fixture
def make_manager(redis_server, clock):
    """Factory for managers on different nodes sharing one Redis."""
    managers = []

    def _make(node_name: str = "node-a", save_interval_sec: int = 20,
              max_inactive_interval: int = 1800) -> RedisSessionManager:
        client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
        manager = RedisSessionManager(
            RedisSessionStore(client, key_prefix="session:", clock=clock),
            node_name=node_name,
            serializer=JsonSerializer(),
            save_interval_sec=save_interval_sec,
            max_inactive_interval=max_inactive_interval,
            clock=clock,
        )
        manager.start()
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        if manager.running:
            manager.stop()


@pytest.fixture
def stored_fields(clock) -> dict:
    """A complete stored record owned by node-a, valid for 30 minutes."""
    now = clock()
    return {
        "id": "abc123",
        "created": str(now - 60_000),
        "accessed": str(now - 1_000),
        "lastNode": "node-a",
        "expiryTime": str(now - 1_000 + 1_800_000),
        "lastSaved": str(now - 1_000),
        "lastAccessed": str(now - 5_000),
        "maxIdle": "1800000",
        "cookieSet": "0",
        "attributes": '{"user":"alice"}',
    }


@pytest.fixture
def restore_logging():
    """Undo root logger changes and the global telemetry service after a test."""
    import telemetry.service

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    telemetry.service._telemetry_service = None
