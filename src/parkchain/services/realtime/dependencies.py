"""FastAPI dependencies for the realtime service."""

from starlette.requests import HTTPConnection

from parkchain.services.realtime.manager import ConnectionManager


def get_connection_manager(connection: HTTPConnection) -> ConnectionManager:
    """Resolve the application's connection manager.

    Works for both HTTP requests and WebSocket connections.
    """
    return connection.app.state.connection_manager
