"""Realtime presence and broadcast service."""

from parkchain.services.realtime.dependencies import get_connection_manager
from parkchain.services.realtime.manager import Connection, ConnectionManager
from parkchain.services.realtime.schemas import (
    BroadcastResult,
    ChargingSessionPayload,
    EventType,
    InboundMessageError,
    InboundType,
    MarketplaceTransactionPayload,
    NotificationPayload,
    OutboundEvent,
    ParkingUpdate,
    PresenceStats,
    ReservationPayload,
    UnknownMessageTypeError,
    parse_inbound_message,
)

__all__ = [
    # Manager
    "Connection",
    "ConnectionManager",
    "get_connection_manager",
    # Schemas
    "BroadcastResult",
    "ChargingSessionPayload",
    "EventType",
    "InboundMessageError",
    "InboundType",
    "MarketplaceTransactionPayload",
    "NotificationPayload",
    "OutboundEvent",
    "ParkingUpdate",
    "PresenceStats",
    "ReservationPayload",
    "UnknownMessageTypeError",
    "parse_inbound_message",
]
