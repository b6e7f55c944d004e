"""Pytest configuration and fixtures."""

import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState


@pytest.fixture(scope="session")
def app():
    """Create FastAPI application for testing."""
    from parkchain.main import create_app

    return create_app()


@pytest.fixture(scope="session")
def client(app):
    """Create test client."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="function")
def settings():
    """Create settings instance for testing."""
    from parkchain.core.config import Settings

    return Settings(environment="testing")


def make_websocket() -> AsyncMock:
    """Create a mock WebSocket in the connected state."""
    ws = AsyncMock()
    ws.client_state = WebSocketState.CONNECTED
    ws.application_state = WebSocketState.CONNECTED
    return ws


def sent_events(ws: AsyncMock) -> list[dict]:
    """Decode every frame sent to a mock WebSocket."""
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


@pytest.fixture
def websocket_factory():
    """Factory for mock WebSockets."""
    return make_websocket


@pytest.fixture
def decode_sent():
    """Decode the frames sent to a mock WebSocket."""
    return sent_events
