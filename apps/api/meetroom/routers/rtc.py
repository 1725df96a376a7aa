"""Signaling WebSocket endpoints for SDP and ICE relay."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..services.presence import SignalingConnection
from ..services.signaling import manager as room_directory

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/signaling")
async def default_signaling_endpoint(websocket: WebSocket) -> None:
    """Signaling for the default room."""

    await _serve(websocket, settings.default_room)


@router.websocket("/signaling/{room}")
async def signaling_endpoint(websocket: WebSocket, room: str) -> None:
    """Roster coordination and addressed relay of negotiation messages."""

    await _serve(websocket, room)


async def _serve(websocket: WebSocket, room_name: str) -> None:
    await websocket.accept()

    connection = SignalingConnection(connection_id=str(uuid4()), send=websocket.send_json)
    room = await room_directory.open(room_name, connection)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring non-JSON frame on connection %s", connection.connection_id)
                continue
            if not isinstance(message, dict):
                continue
            await room.handle_message(connection, message)
    except WebSocketDisconnect:
        pass
    finally:
        await room_directory.close(room, connection)
