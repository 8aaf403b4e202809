"""
Unit tests for the application factory.

Tests cover:
- Health endpoints reporting store reachability
- Manager start/stop through the application lifespan
- Periodic scavenging
- Fail-fast startup without a store
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from config.settings import ConfigurationError, Settings
from main import _scavenge_periodically, create_app


@pytest.fixture
def settings() -> Settings:
    return Settings(redis_url="redis://localhost:6379/0", worker_name="node-a")


@pytest.fixture
def manager(make_manager):
    return make_manager("node-a")


@pytest.fixture
def app(settings, manager, restore_logging):
    return create_app(settings, manager=manager)


class TestHealthEndpoints:
    """Tests for liveness and readiness."""

    def test_liveness(self, app):
        with TestClient(app) as client:
            response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_readiness_reports_node_and_cache(self, app, manager):
        manager.new_session("s1")

        with TestClient(app) as client:
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "node": "node-a", "cached_sessions": 1}

    def test_readiness_fails_without_store(self, app, redis_server):
        with TestClient(app) as client:
            redis_server.connected = False
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_responses_carry_request_id(self, app):
        with TestClient(app) as client:
            response = client.get("/health/live", headers={"X-Request-ID": "req-1"})

        assert response.headers["X-Request-ID"] == "req-1"


class TestLifespan:
    """Tests for manager start and stop."""

    def test_manager_runs_for_app_lifetime(self, app, manager):
        assert app.state.session_manager is manager

        with TestClient(app):
            assert manager.running

        assert not manager.running

    def test_empty_injected_manager_is_used(self, manager, restore_logging):
        """Test that a manager with no cached sessions is not replaced from settings."""
        settings = Settings(redis_url="redis://127.0.0.1:1/0", worker_name="node-a")
        assert len(manager) == 0

        with patch("main.RedisSessionManager.from_settings") as from_settings:
            app = create_app(settings, manager=manager)

        from_settings.assert_not_called()
        assert app.state.session_manager is manager

    def test_startup_fails_without_store(self, restore_logging):
        settings = Settings(redis_url=None, worker_name="node-a")

        with pytest.raises(ConfigurationError):
            create_app(settings)


class TestScavenger:
    """Tests for the periodic scavenging task."""

    @pytest.mark.asyncio
    async def test_scavenges_until_cancelled(self):
        manager = MagicMock()
        task = asyncio.create_task(_scavenge_periodically(manager, 0.01))

        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert manager.scavenge.call_count >= 1

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_loop(self):
        manager = MagicMock()
        manager.scavenge.side_effect = RuntimeError("boom")
        task = asyncio.create_task(_scavenge_periodically(manager, 0.01))

        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert manager.scavenge.call_count >= 2
