"""WebSocket and push API endpoints for realtime updates."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from parkchain.services.realtime import (
    BroadcastResult,
    ChargingSessionPayload,
    ConnectionManager,
    MarketplaceTransactionPayload,
    NotificationPayload,
    ParkingUpdate,
    PresenceStats,
    ReservationPayload,
    get_connection_manager,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["WebSocket"])

Manager = Annotated[ConnectionManager, Depends(get_connection_manager)]


@router.websocket("")
async def websocket_endpoint(websocket: WebSocket, manager: Manager):
    """WebSocket endpoint for live updates.

    Protocol:
    1. Client connects, server sends `connected`
    2. Client sends `authenticate` with its userId to receive personal events
    3. Client sends `join_room` / `leave_room` to follow parking lots,
       charging stations or feeds
    4. Server pushes domain events to users and rooms
    5. The server sends protocol-level ping frames; a peer that stops
       answering them is closed and reclaimed by the heartbeat sweep
    """
    connection = await manager.accept(websocket)
    if connection is None:
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await manager.dispatch_inbound(connection, raw)
    except WebSocketDisconnect as e:
        logger.info(f"Client {connection.connection_id} disconnected (code={e.code})")
    except Exception as e:
        logger.error(f"WebSocket error for {connection.connection_id}: {e}")
    finally:
        manager.disconnect(connection)


@router.get("/stats", response_model=PresenceStats)
async def get_websocket_stats(manager: Manager) -> PresenceStats:
    """Get WebSocket connection statistics.

    Returns:
        Open connections, authenticated users and active rooms
    """
    return manager.get_stats()


@router.post("/broadcast/parking", response_model=BroadcastResult)
async def broadcast_parking_update(update: ParkingUpdate, manager: Manager) -> BroadcastResult:
    """Broadcast a parking occupancy change.

    Args:
        update: Lot ID with available and occupied spot counts

    Returns:
        Broadcast result
    """
    count = await manager.emit_parking_update(
        update.parking_lot_id, update.available_spots, update.occupied_spots
    )
    return BroadcastResult(clients_notified=count)


@router.post("/broadcast/reservation", response_model=BroadcastResult)
async def broadcast_reservation(
    reservation: ReservationPayload, manager: Manager
) -> BroadcastResult:
    """Broadcast a newly created reservation.

    Args:
        reservation: Reservation record

    Returns:
        Broadcast result
    """
    count = await manager.emit_reservation_created(reservation)
    return BroadcastResult(clients_notified=count)


@router.post("/broadcast/charging", response_model=BroadcastResult)
async def broadcast_charging_session(
    session: ChargingSessionPayload, manager: Manager
) -> BroadcastResult:
    """Broadcast a charging session update.

    Args:
        session: Charging session record

    Returns:
        Broadcast result
    """
    count = await manager.emit_charging_session_update(session)
    return BroadcastResult(clients_notified=count)


@router.post("/broadcast/marketplace", response_model=BroadcastResult)
async def broadcast_marketplace_transaction(
    transaction: MarketplaceTransactionPayload, manager: Manager
) -> BroadcastResult:
    """Broadcast a settled marketplace transaction.

    Args:
        transaction: Transaction record

    Returns:
        Broadcast result
    """
    count = await manager.emit_marketplace_transaction(transaction)
    return BroadcastResult(clients_notified=count)


@router.post("/broadcast/users/{user_id}/notification", response_model=BroadcastResult)
async def send_notification(
    user_id: str, notification: NotificationPayload, manager: Manager
) -> BroadcastResult:
    """Send a notification to every session of a user.

    Args:
        user_id: Target user
        notification: Notification content

    Returns:
        Broadcast result
    """
    count = await manager.emit_notification(user_id, notification)
    return BroadcastResult(status="sent", clients_notified=count)
