"""Connection manager for realtime presence and broadcasts.

Tracks live WebSocket connections, indexes them by authenticated user and by
room, and fans out JSON events to one user, one room or every connection.

All index mutations run as synchronous sections between awaits, so they are
serialized by the event loop without an explicit lock.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from parkchain.services.realtime.schemas import (
    CHARGING_FEED,
    MARKETPLACE_FEED,
    PARKING_FEED,
    AuthenticatedEvent,
    AuthenticateMessage,
    AuthErrorEvent,
    ChargingSessionPayload,
    ChargingSessionUpdateEvent,
    ConnectedEvent,
    ErrorEvent,
    InboundMessageError,
    JoinedRoomEvent,
    JoinRoomMessage,
    LeaveRoomMessage,
    MarketplaceTransactionEvent,
    MarketplaceTransactionPayload,
    NotificationEvent,
    NotificationPayload,
    OutboundEvent,
    ParkingUpdate,
    ParkingUpdateEvent,
    PingMessage,
    PongEvent,
    PresenceStats,
    ReservationCreatedEvent,
    ReservationPayload,
    UnknownMessageTypeError,
    as_key,
    charging_topic,
    parking_topic,
    parse_inbound_message,
)

logger = logging.getLogger(__name__)


class Connection:
    """A live client session tracked by the manager."""

    def __init__(self, websocket: WebSocket, connection_id: str | None = None):
        """Initialize connection.

        Args:
            websocket: The WebSocket transport
            connection_id: Optional connection identifier
        """
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid4())
        self.user_id: str | None = None
        self.topics: set[str] = set()
        self.connected_at = datetime.now(timezone.utc)
        self.last_seen = self.connected_at
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Connection({self.connection_id!r}, user_id={self.user_id!r})"

    @property
    def is_open(self) -> bool:
        """Whether both sides of the transport are still connected."""
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_alive(self) -> None:
        """Record traffic on the transport."""
        self.last_seen = datetime.now(timezone.utc)

    async def send_text(self, payload: str) -> bool:
        """Write an encoded frame to the client.

        Args:
            payload: Encoded event

        Returns:
            True if written, False if the transport is closed or the write failed
        """
        if not self.is_open:
            logger.debug(f"Skipping send to closed connection {self.connection_id}")
            return False

        try:
            async with self._lock:
                await self.websocket.send_text(payload)
            self.mark_alive()
            return True
        except Exception as e:
            logger.warning(f"Failed to send to {self.connection_id}: {e}")
            return False

    async def send_event(self, event: OutboundEvent) -> bool:
        """Encode and send a single event to this client."""
        return await self.send_text(event.encode())

    async def close(self, code: int = status.WS_1001_GOING_AWAY) -> None:
        """Close the transport, ignoring a transport that is already gone."""
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Close failed for {self.connection_id}: {e}")


class ConnectionManager:
    """Registry of live connections with user and room indexes."""

    def __init__(self, heartbeat_interval: float = 30.0):
        """Initialize connection manager.

        Args:
            heartbeat_interval: Seconds between heartbeat sweeps
        """
        self.heartbeat_interval = heartbeat_interval
        self._connections: dict[str, Connection] = {}
        self._users: dict[str, set[Connection]] = {}
        self._topics: dict[str, set[Connection]] = {}
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def active_connections(self) -> int:
        """Get number of registered connections."""
        return len(self._connections)

    @property
    def is_running(self) -> bool:
        """Whether the heartbeat loop is running."""
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic heartbeat sweep."""
        if self.is_running:
            logger.warning("Connection manager is already running")
            return

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Connection manager started (heartbeat every {self.heartbeat_interval}s)")

    async def shutdown(self) -> None:
        """Stop the heartbeat sweep and close every connection."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        connections = list(self._connections.values())
        for connection in connections:
            self.disconnect(connection)
        for connection in connections:
            await connection.close(status.WS_1001_GOING_AWAY)

        logger.info(f"Connection manager stopped ({len(connections)} connections closed)")

    async def _heartbeat_loop(self) -> None:
        """Run heartbeat sweeps until cancelled."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat_sweep()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def accept(self, websocket: WebSocket, connection_id: str | None = None) -> Connection | None:
        """Accept a WebSocket upgrade and register the connection.

        Args:
            websocket: The WebSocket transport
            connection_id: Optional connection identifier

        Returns:
            The registered connection, or None if the transport closed first
        """
        try:
            await websocket.accept()
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info(f"WebSocket closed during handshake: {e}")
            return None

        connection = Connection(websocket, connection_id)
        if not connection.is_open:
            logger.info(f"WebSocket {connection.connection_id} closed before registration")
            return None

        self._connections[connection.connection_id] = connection
        logger.info(
            f"Connection {connection.connection_id} accepted. Active: {self.active_connections}"
        )

        await connection.send_event(ConnectedEvent(connection_id=connection.connection_id))
        return connection

    def disconnect(self, connection: Connection) -> bool:
        """Remove a connection from every index.

        Args:
            connection: Connection to remove

        Returns:
            True if the connection was registered
        """
        registered = self._connections.pop(connection.connection_id, None) is not None

        self._unindex_user(connection)
        for topic_id in list(connection.topics):
            self._remove_from_topic(connection, topic_id)

        if registered:
            logger.info(
                f"Connection {connection.connection_id} closed (user: {connection.user_id}). "
                f"Active: {self.active_connections}"
            )
        return registered

    async def heartbeat_sweep(self) -> int:
        """Reclaim connections whose transport is no longer open.

        Ping/pong frames are exchanged by the ASGI server at the protocol
        level (`ws_ping_interval` / `ws_ping_timeout`), which browsers answer
        without any client code. A peer that misses its pong has its transport
        closed by the server; the sweep then closes and unindexes every
        registered connection left in that state. Open connections are never
        touched, however long they stay silent.

        Returns:
            Number of connections terminated
        """
        terminated = 0

        for connection in list(self._connections.values()):
            if connection.connection_id not in self._connections:
                continue
            if connection.is_open:
                continue

            logger.info(
                f"Terminating dead connection {connection.connection_id} "
                f"(last seen {connection.last_seen.isoformat()})"
            )
            self.disconnect(connection)
            await connection.close(status.WS_1001_GOING_AWAY)
            terminated += 1

        return terminated

    # -------------------------------------------------------------------------
    # Inbound control messages
    # -------------------------------------------------------------------------

    async def dispatch_inbound(self, connection: Connection, raw: str | bytes) -> None:
        """Route a raw client frame to its handler.

        Errors are reported to the client as events and never raised.

        Args:
            connection: Originating connection
            raw: Raw frame received from the client
        """
        connection.mark_alive()

        try:
            message = parse_inbound_message(raw)
        except UnknownMessageTypeError as e:
            logger.warning(f"Unknown message type from {connection.connection_id}: {e.message_type}")
            await connection.send_event(ErrorEvent(message=e.message))
            return
        except InboundMessageError as e:
            logger.debug(f"Malformed message from {connection.connection_id}: {e.__cause__}")
            await connection.send_event(ErrorEvent(message=e.message))
            return

        try:
            if isinstance(message, AuthenticateMessage):
                await self.authenticate(connection, message.data.user_id)
            elif isinstance(message, JoinRoomMessage):
                await self.join_topic(connection, message.data.room_id)
            elif isinstance(message, LeaveRoomMessage):
                await self.leave_topic(connection, message.data.room_id)
            elif isinstance(message, PingMessage):
                await connection.send_event(PongEvent())
        except Exception:
            logger.exception(f"Failed to handle {message.type.value} from {connection.connection_id}")
            await connection.send_event(ErrorEvent(message="Internal server error"))

    async def authenticate(self, connection: Connection, user_id: Any) -> bool:
        """Associate a connection with a user.

        Args:
            connection: Connection to authenticate
            user_id: User identifier supplied by the client

        Returns:
            True if authenticated
        """
        user_key = as_key(user_id)
        if user_key is None:
            await connection.send_event(AuthErrorEvent(message="User ID required"))
            return False

        if connection.connection_id not in self._connections:
            return False

        if connection.user_id is not None and connection.user_id != user_key:
            self._unindex_user(connection)

        connection.user_id = user_key
        sessions = self._users.setdefault(user_key, set())
        sessions.add(connection)
        session_count = len(sessions)

        logger.info(f"User {user_key} authenticated. Total connections: {session_count}")

        await connection.send_event(AuthenticatedEvent(user_id=user_key, sessions=session_count))
        return True

    async def join_topic(self, connection: Connection, topic_id: Any) -> bool:
        """Add a connection to a room.

        Args:
            connection: Connection joining
            topic_id: Room identifier

        Returns:
            True if the connection is a member afterwards
        """
        topic_key = as_key(topic_id)
        if topic_key is None:
            await connection.send_event(ErrorEvent(message="Room ID required"))
            return False

        if connection.connection_id not in self._connections:
            return False

        connection.topics.add(topic_key)
        members = self._topics.setdefault(topic_key, set())
        members.add(connection)

        logger.info(f"Connection {connection.connection_id} joined room {topic_key}. Room size: {len(members)}")

        await connection.send_event(JoinedRoomEvent(room_id=topic_key))
        return True

    async def leave_topic(self, connection: Connection, topic_id: Any) -> bool:
        """Remove a connection from a room.

        Args:
            connection: Connection leaving
            topic_id: Room identifier

        Returns:
            True if the connection was a member
        """
        topic_key = as_key(topic_id)
        if topic_key is None:
            await connection.send_event(ErrorEvent(message="Room ID required"))
            return False

        was_member = self._remove_from_topic(connection, topic_key)
        logger.info(f"Connection {connection.connection_id} left room {topic_key}")

        return was_member

    def _unindex_user(self, connection: Connection) -> None:
        if connection.user_id is None:
            return
        sessions = self._users.get(connection.user_id)
        if sessions is None:
            return
        sessions.discard(connection)
        if not sessions:
            del self._users[connection.user_id]

    def _remove_from_topic(self, connection: Connection, topic_key: str) -> bool:
        connection.topics.discard(topic_key)
        members = self._topics.get(topic_key)
        if members is None or connection not in members:
            return False

        members.discard(connection)
        if not members:
            del self._topics[topic_key]
            logger.debug(f"Room {topic_key} deleted (empty)")
        return True

    # -------------------------------------------------------------------------
    # Fan-out
    # -------------------------------------------------------------------------

    async def _fan_out(self, targets: list[Connection], event: OutboundEvent, label: str) -> int:
        payload = event.encode()
        sent_count = 0

        for connection in targets:
            if await connection.send_text(payload):
                sent_count += 1

        logger.info(f"Sent {event.type.value} to {label} ({sent_count} recipients)")
        return sent_count

    async def send_to_user(self, user_id: Any, event: OutboundEvent) -> int:
        """Send an event to every session of a user.

        Args:
            user_id: Target user
            event: Event to send

        Returns:
            Number of connections that received the event
        """
        user_key = as_key(user_id)
        sessions = self._users.get(user_key) if user_key else None
        if not sessions:
            logger.debug(f"No connections found for user {user_key} (0 recipients)")
            return 0

        return await self._fan_out(list(sessions), event, f"user {user_key}")

    async def send_to_topic(self, topic_id: Any, event: OutboundEvent) -> int:
        """Send an event to every member of a room.

        Args:
            topic_id: Target room
            event: Event to send

        Returns:
            Number of connections that received the event
        """
        topic_key = as_key(topic_id)
        members = self._topics.get(topic_key) if topic_key else None
        if not members:
            logger.debug(f"Room {topic_key} has no members (0 recipients)")
            return 0

        return await self._fan_out(list(members), event, f"room {topic_key}")

    async def send_to_all(self, event: OutboundEvent) -> int:
        """Send an event to every registered connection.

        Args:
            event: Event to send

        Returns:
            Number of connections that received the event
        """
        return await self._fan_out(list(self._connections.values()), event, "all clients")

    # -------------------------------------------------------------------------
    # Domain emitters
    # -------------------------------------------------------------------------

    async def emit_parking_update(
        self,
        parking_lot_id: int | str,
        available_spots: int,
        occupied_spots: int,
    ) -> int:
        """Broadcast a parking occupancy change to the lot's room and the parking feed.

        Invalid counts are logged and dropped.

        Returns:
            Number of deliveries
        """
        try:
            update = ParkingUpdate(
                parking_lot_id=parking_lot_id,
                available_spots=available_spots,
                occupied_spots=occupied_spots,
            )
        except ValidationError as e:
            logger.warning(f"Dropping invalid parking update for lot {parking_lot_id}: {e}")
            return 0

        event = ParkingUpdateEvent(data=update)
        sent = await self.send_to_topic(parking_topic(parking_lot_id), event)
        sent += await self.send_to_topic(PARKING_FEED, event)
        return sent

    async def emit_reservation_created(self, reservation: ReservationPayload) -> int:
        """Notify the reserving user, the lot owner and the lot's room.

        Returns:
            Number of deliveries
        """
        event = ReservationCreatedEvent(data=reservation)
        sent = await self.send_to_user(reservation.user_id, event)
        if reservation.owner_id is not None:
            sent += await self.send_to_user(reservation.owner_id, event)
        sent += await self.send_to_topic(parking_topic(reservation.parking_lot_id), event)
        return sent

    async def emit_charging_session_update(self, session: ChargingSessionPayload) -> int:
        """Notify the charging user, the station's room and the charging feed.

        Returns:
            Number of deliveries
        """
        event = ChargingSessionUpdateEvent(data=session)
        sent = await self.send_to_user(session.user_id, event)
        sent += await self.send_to_topic(charging_topic(session.station_id), event)
        sent += await self.send_to_topic(CHARGING_FEED, event)
        return sent

    async def emit_marketplace_transaction(self, transaction: MarketplaceTransactionPayload) -> int:
        """Notify buyer, seller and the marketplace feed.

        Returns:
            Number of deliveries
        """
        event = MarketplaceTransactionEvent(data=transaction)
        sent = 0
        if transaction.buyer_id is not None:
            sent += await self.send_to_user(transaction.buyer_id, event)
        if transaction.seller_id is not None:
            sent += await self.send_to_user(transaction.seller_id, event)
        sent += await self.send_to_topic(MARKETPLACE_FEED, event)
        return sent

    async def emit_notification(self, user_id: Any, notification: NotificationPayload) -> int:
        """Send a notification to every session of a user.

        Returns:
            Number of deliveries
        """
        return await self.send_to_user(user_id, NotificationEvent(data=notification))

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_connection(self, connection_id: str) -> Connection | None:
        """Get a registered connection by ID."""
        return self._connections.get(connection_id)

    def get_user_connections(self, user_id: Any) -> set[Connection]:
        """Get the sessions of a user."""
        return set(self._users.get(as_key(user_id), ()))

    def get_topic_members(self, topic_id: Any) -> set[Connection]:
        """Get the members of a room."""
        return set(self._topics.get(as_key(topic_id), ()))

    def get_stats(self) -> PresenceStats:
        """Get connection statistics.

        Returns:
            Open connections, authenticated users and active rooms
        """
        return PresenceStats(
            total_connections=self.active_connections,
            authenticated_users=len(self._users),
            active_rooms=len(self._topics),
        )
