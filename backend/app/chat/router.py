"""Chat router providing the WebSocket transport and HTTP read endpoints.

This module provides:
    - GET /chat/{room_id}/history: Recent room history
    - WebSocket /chat/{room_id}: Real-time chat messaging

The WebSocket endpoint is a thin transport adapter. It wraps the socket in a
WebSocketConnection, hands every frame to the Dispatcher and reports the
close. All protocol decisions are made by the Dispatcher.

Protocol Message Types (client -> server):
    - setUsername: Identity claim ({username, userId?})
    - add-contact / remove-contact: Contact graph edits
    - get-contacts / get-mutuals / get-online-contacts / get-contacts-in-room
    - direct-message / get-dm-history
    - (no type): Room chat message ({text})
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from app.config import get_config

from .connections import WebSocketConnection
from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/chat/{room_id}/history")
async def get_room_history(
    room_id: str,
    limit: Optional[int] = Query(None, ge=1, description="Return only the most recent N messages"),
) -> JSONResponse:
    """Get recent message history for a room.

    Args:
        room_id: The room key.
        limit: Optional cap on the number of messages (most recent first kept).

    Returns:
        JSON with the room key and messages, oldest first. An unknown room
        returns an empty list.

    Example:
        GET /chat/lobby/history?limit=20
    """
    messages = Dispatcher.get_instance().rooms.recent_history(room_id, limit)
    return JSONResponse({
        "roomId": room_id,
        "messages": [msg.model_dump() for msg in messages],
    })


@router.websocket("/chat/{room_id}")
async def websocket_chat_endpoint(websocket: WebSocket, room_id: str) -> None:
    """WebSocket endpoint for real-time chat in a room.

    Protocol Flow:
        1. Client connects -> socket joins the room unclaimed
        2. Client sends: {type: "setUsername", username}
           -> Server sends: {type: "userId-assigned", userId, username}
           -> Server sends: room history, then "Users in room: ..." if occupied
           -> Others receive: "<name> joined the room"
        3. Client sends: {text}
           -> Room receives: {username, text, timestamp}
        4. On disconnect -> Others receive: "<name> left the room"

    Args:
        websocket: The WebSocket connection.
        room_id: The room key.
    """
    settings = get_config().chat
    dispatcher = Dispatcher.get_instance()

    # Enforce max_connections_per_room from config (0 = no limit)
    max_connections = settings.max_connections_per_room
    if max_connections > 0 and dispatcher.rooms.member_count(room_id) >= max_connections:
        logger.warning(
            f"[WS] Room {room_id} is full ({max_connections} connections). "
            "Rejecting new connection."
        )
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket, queue_size=settings.outbound_queue_size)
    connection.start()
    dispatcher.connect(connection, room_id)
    logger.info(
        f"[WS] Connection {connection.id} accepted. "
        f"Room {room_id} now has {dispatcher.rooms.member_count(room_id)} connection(s)"
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            try:
                dispatcher.inbound_text(connection, text)
            except Exception as e:
                # A single bad event must never take the connection down
                logger.exception(f"[WS] Error processing message on {connection.id}: {e}")
    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection.id} closed by client")
    except Exception as e:
        dispatcher.transport_error(connection, e)
    finally:
        dispatcher.disconnect(connection)
        await connection.close()
