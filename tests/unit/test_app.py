"""Test cases for FastAPI application."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_check_returns_ok(self, client: TestClient):
        """Test that health endpoint returns healthy status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data

    def test_health_check_includes_timestamp(self, client: TestClient):
        """Test that health endpoint includes timestamp."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert "timestamp" in data


class TestAPIRoot:
    """Test API root endpoint."""

    def test_api_root_returns_info(self, client: TestClient):
        """Test that API root returns application info."""
        response = client.get("/api/v1/")

        assert response.status_code == 200
        data = response.json()
        assert "name" in data
        assert "version" in data
        assert "docs_url" in data


class TestCORSConfiguration:
    """Test CORS middleware configuration."""

    def test_cors_headers_present(self, client: TestClient):
        """Test that CORS headers are properly set."""
        response = client.options(
            "/health",
            headers={"Origin": "http://localhost:3000"}
        )

        # Should not fail (CORS configured)
        assert response.status_code in [200, 405]


class TestApplicationState:
    """Test application wiring."""

    def test_connection_manager_on_state(self, app):
        """Test the app owns one connection manager."""
        from parkchain.services.realtime import ConnectionManager

        assert isinstance(app.state.connection_manager, ConnectionManager)

    def test_heartbeat_running_inside_lifespan(self, app, client: TestClient):
        """Test the heartbeat loop runs while the app is up."""
        assert app.state.connection_manager.is_running is True


class TestServerEntryPoint:
    """Test the uvicorn entry point."""

    def test_run_enables_protocol_pings(self):
        """Test uvicorn is started with the configured ping settings."""
        from parkchain.core.config import get_settings
        from parkchain.main import run

        settings = get_settings()

        with patch("uvicorn.run") as uvicorn_run:
            run()

        uvicorn_run.assert_called_once()
        args, kwargs = uvicorn_run.call_args
        assert args == ("parkchain.main:app",)
        assert kwargs["ws_ping_interval"] == settings.ws_ping_interval
        assert kwargs["ws_ping_timeout"] == settings.ws_ping_timeout
        assert kwargs["port"] == settings.port
