"""Schemas for the realtime presence and broadcast service."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Topics every client can join for platform-wide feeds
PARKING_FEED = "parking_feed"
CHARGING_FEED = "charging_feed"
MARKETPLACE_FEED = "marketplace_feed"


def parking_topic(parking_lot_id: int | str) -> str:
    """Topic name for a single parking lot."""
    return f"parking_{parking_lot_id}"


def charging_topic(station_id: int | str) -> str:
    """Topic name for a single charging station."""
    return f"charging_{station_id}"


def as_key(value: Any) -> str | None:
    """Normalize a user or room identifier.

    Integers are stringified and strings stripped. Returns None when the
    identifier is missing or empty.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


class InboundType(str, Enum):
    """Control messages a client may send."""

    AUTHENTICATE = "authenticate"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    PING = "ping"


class EventType(str, Enum):
    """Events the server sends to clients."""

    # Connection lifecycle
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    AUTH_ERROR = "auth_error"
    JOINED_ROOM = "joined_room"
    ERROR = "error"
    PONG = "pong"

    # Domain updates
    PARKING_UPDATE = "parking_update"
    RESERVATION_CREATED = "reservation_created"
    CHARGING_SESSION_UPDATE = "charging_session_update"
    MARKETPLACE_TRANSACTION = "marketplace_transaction"
    NOTIFICATION = "notification"


class InboundMessageError(Exception):
    """Raised when an inbound frame cannot be decoded into a control message."""

    def __init__(self, message: str = "Invalid message format"):
        super().__init__(message)
        self.message = message


class UnknownMessageTypeError(InboundMessageError):
    """Raised when an inbound frame names a type the service does not handle."""

    def __init__(self, message_type: str):
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type


# =============================================================================
# Inbound messages
# =============================================================================


class UserPayload(BaseModel):
    """Payload of an authenticate message."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(None, alias="userId", description="Client user ID")

    @field_validator("user_id", mode="before")
    @classmethod
    def normalize_user_id(cls, v: Any) -> Any:
        if v is None or isinstance(v, (int, str)):
            return as_key(v)
        return v


class RoomPayload(BaseModel):
    """Payload of a join_room or leave_room message."""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str | None = Field(None, alias="roomId", description="Room to join/leave")

    @field_validator("room_id", mode="before")
    @classmethod
    def normalize_room_id(cls, v: Any) -> Any:
        if v is None or isinstance(v, (int, str)):
            return as_key(v)
        return v


class InboundMessage(BaseModel):
    """Base for client control messages."""

    type: InboundType

    @field_validator("data", mode="before", check_fields=False)
    @classmethod
    def empty_data(cls, v: Any) -> Any:
        return {} if v is None else v


class AuthenticateMessage(InboundMessage):
    type: InboundType = InboundType.AUTHENTICATE
    data: UserPayload = Field(default_factory=UserPayload)


class JoinRoomMessage(InboundMessage):
    type: InboundType = InboundType.JOIN_ROOM
    data: RoomPayload = Field(default_factory=RoomPayload)


class LeaveRoomMessage(InboundMessage):
    type: InboundType = InboundType.LEAVE_ROOM
    data: RoomPayload = Field(default_factory=RoomPayload)


class PingMessage(InboundMessage):
    type: InboundType = InboundType.PING


INBOUND_MODELS: dict[InboundType, type[InboundMessage]] = {
    InboundType.AUTHENTICATE: AuthenticateMessage,
    InboundType.JOIN_ROOM: JoinRoomMessage,
    InboundType.LEAVE_ROOM: LeaveRoomMessage,
    InboundType.PING: PingMessage,
}


def parse_inbound_message(raw: str | bytes) -> InboundMessage:
    """Decode a raw client frame into a typed control message.

    Args:
        raw: Text or binary frame received from the client

    Returns:
        The decoded message

    Raises:
        UnknownMessageTypeError: If the frame names an unsupported type
        InboundMessageError: If the frame is not a valid control message
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InboundMessageError() from e

    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise InboundMessageError()

    try:
        message_type = InboundType(payload["type"])
    except ValueError:
        raise UnknownMessageTypeError(payload["type"]) from None

    try:
        return INBOUND_MODELS[message_type].model_validate(payload)
    except ValidationError as e:
        raise InboundMessageError() from e


# =============================================================================
# Domain payloads
# =============================================================================


class EventPayload(BaseModel):
    """Base for domain event payloads.

    Record columns beyond the declared fields are passed through as-is.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp")


class ParkingUpdate(EventPayload):
    """Parking lot occupancy change."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    parking_lot_id: int | str = Field(..., alias="parkingLotId", description="Parking lot ID")
    available_spots: int = Field(..., alias="availableSpots", ge=0, description="Free spots")
    occupied_spots: int = Field(..., alias="occupiedSpots", ge=0, description="Taken spots")


class ReservationPayload(EventPayload):
    """Newly created reservation."""

    id: int | str | None = Field(None, description="Reservation ID")
    user_id: int | str = Field(..., description="User who made the reservation")
    owner_id: int | str | None = Field(None, description="Parking lot owner")
    parking_lot_id: int | str = Field(..., description="Reserved parking lot")


class ChargingSessionPayload(EventPayload):
    """Charging session state change."""

    id: int | str | None = Field(None, description="Session ID")
    user_id: int | str = Field(..., description="User charging")
    station_id: int | str = Field(..., description="Charging station")
    status: str | None = Field(None, description="Session status")


class MarketplaceTransactionPayload(EventPayload):
    """Settled marketplace transaction."""

    id: int | str | None = Field(None, description="Transaction ID")
    buyer_id: int | str | None = Field(None, description="Buyer user ID")
    seller_id: int | str | None = Field(None, description="Seller user ID")
    amount: str | None = Field(None, description="Transaction amount")


class NotificationPayload(EventPayload):
    """User-facing notification."""

    title: str | None = Field(None, description="Notification title")
    message: str | None = Field(None, description="Notification body")


# =============================================================================
# Outbound events
# =============================================================================


class OutboundEvent(BaseModel):
    """Server to client event envelope."""

    model_config = ConfigDict(populate_by_name=True)

    type: EventType = Field(..., description="Event type")
    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp")

    def encode(self) -> str:
        """Serialize the event for the wire."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ConnectedEvent(OutboundEvent):
    type: EventType = EventType.CONNECTED
    message: str = "WebSocket connection established"
    connection_id: str = Field(..., alias="connectionId")


class AuthenticatedEvent(OutboundEvent):
    type: EventType = EventType.AUTHENTICATED
    user_id: str = Field(..., alias="userId")
    sessions: int = Field(..., description="Concurrent sessions for this user")


class AuthErrorEvent(OutboundEvent):
    type: EventType = EventType.AUTH_ERROR
    message: str


class JoinedRoomEvent(OutboundEvent):
    type: EventType = EventType.JOINED_ROOM
    room_id: str = Field(..., alias="roomId")


class ErrorEvent(OutboundEvent):
    type: EventType = EventType.ERROR
    message: str


class PongEvent(OutboundEvent):
    type: EventType = EventType.PONG


class ParkingUpdateEvent(OutboundEvent):
    type: EventType = EventType.PARKING_UPDATE
    data: ParkingUpdate


class ReservationCreatedEvent(OutboundEvent):
    type: EventType = EventType.RESERVATION_CREATED
    data: ReservationPayload


class ChargingSessionUpdateEvent(OutboundEvent):
    type: EventType = EventType.CHARGING_SESSION_UPDATE
    data: ChargingSessionPayload


class MarketplaceTransactionEvent(OutboundEvent):
    type: EventType = EventType.MARKETPLACE_TRANSACTION
    data: MarketplaceTransactionPayload


class NotificationEvent(OutboundEvent):
    type: EventType = EventType.NOTIFICATION
    data: NotificationPayload


# =============================================================================
# API models
# =============================================================================


class PresenceStats(BaseModel):
    """Snapshot of live connection counts."""

    total_connections: int = Field(..., description="Open connections")
    authenticated_users: int = Field(..., description="Distinct authenticated users")
    active_rooms: int = Field(..., description="Rooms with at least one member")
    timestamp: datetime = Field(default_factory=_utcnow, description="Snapshot time")


class BroadcastResult(BaseModel):
    """Result of a push API call."""

    status: str = Field(default="broadcasted", description="Broadcast status")
    clients_notified: int = Field(..., description="Deliveries made")
