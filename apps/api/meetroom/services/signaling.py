"""In-memory WebRTC signaling: rooms, negotiation relay, and chat fan-out."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..core.errors import MeetroomError
from .presence import ConnectionPhase, PresenceCoordinator, SignalingConnection
from .roster import RosterRegistry

RELAYED_KINDS = frozenset({"offer", "answer", "ice-candidate"})

logger = logging.getLogger(__name__)


class NegotiationRelay:
    """Forward addressed negotiation envelopes between joined participants.

    The payload is never inspected. Envelopes for absent recipients are
    dropped without telling the sender; the next membership snapshot lets
    the sender retire its stale peer.
    """

    def __init__(self, coordinator: PresenceCoordinator) -> None:
        self._coordinator = coordinator

    async def relay(self, connection: SignalingConnection, kind: str, message: dict) -> bool:
        """Forward ``message`` to its ``to`` participant; return True when delivered."""

        sender = self._coordinator.identity_of(connection)
        if sender is None:
            logger.debug("Ignoring %s from connection %s before join", kind, connection.connection_id)
            return False

        target_id = message.get("to")
        if not isinstance(target_id, str) or not target_id:
            logger.warning("Dropping %s from %s without a recipient", kind, sender)
            return False
        if target_id == sender:
            logger.warning("Dropping %s that %s addressed to itself", kind, sender)
            return False

        target = self._coordinator.registry.resolve(target_id)
        if target is None:
            logger.info("User %s not found; dropping %s from %s", target_id, kind, sender)
            return False

        try:
            await target.send({"type": kind, "from": sender, "payload": message.get("payload")})
        except Exception as exc:  # noqa: BLE001 - a dead recipient must not affect the sender
            logger.warning("Failed to deliver %s from %s to %s: %s", kind, sender, target_id, exc)
            return False
        return True

    async def chat(self, connection: SignalingConnection, message: dict) -> bool:
        """Broadcast a chat message unchanged to everyone, sender included."""

        if self._coordinator.identity_of(connection) is None:
            logger.debug("Ignoring chat from connection %s before join", connection.connection_id)
            return False
        await self._coordinator.broadcast(message)
        return True


@dataclass(slots=True)
class MeetingRoom:
    """Registry, presence coordinator, and relay for one room."""

    name: str
    registry: RosterRegistry[SignalingConnection] = field(default_factory=RosterRegistry)
    coordinator: PresenceCoordinator = field(init=False)
    relay: NegotiationRelay = field(init=False)

    def __post_init__(self) -> None:
        self.coordinator = PresenceCoordinator(self.registry)
        self.relay = NegotiationRelay(self.coordinator)

    def participants(self) -> list[str]:
        return self.registry.snapshot()

    async def handle_message(self, connection: SignalingConnection, message: dict) -> None:
        """Process one inbound message from ``connection`` to completion."""

        kind = message.get("type")
        if kind == "join-room":
            await self._handle_join(connection, message)
        elif kind in RELAYED_KINDS:
            await self.relay.relay(connection, kind, message)
        elif kind == "chat-message":
            await self.relay.chat(connection, message)
        else:
            logger.debug("Ignoring unknown message type %r in room %s", kind, self.name)

    async def _handle_join(self, connection: SignalingConnection, message: dict) -> None:
        try:
            await self.coordinator.join(connection, message.get("identifier"))
        except MeetroomError as exc:
            logger.info("Join rejected in room %s: %s", self.name, exc)
            await connection.send(
                {
                    "type": "join-result",
                    "success": False,
                    "error": str(exc),
                    "code": exc.kind.value if exc.kind else None,
                }
            )
            return
        await connection.send({"type": "join-result", "success": True})

    async def disconnect(self, connection: SignalingConnection) -> None:
        if connection.phase is ConnectionPhase.LEFT:
            return
        await self.coordinator.disconnect(connection)


class RoomDirectory:
    """Own one ``MeetingRoom`` per room name, dropping rooms once empty."""

    def __init__(self) -> None:
        self._rooms: Dict[str, MeetingRoom] = {}
        self._lock = asyncio.Lock()

    async def open(self, name: str, connection: SignalingConnection) -> MeetingRoom:
        """Attach ``connection`` to room ``name``, creating the room on demand."""

        async with self._lock:
            room = self._rooms.get(name)
            if room is None:
                room = MeetingRoom(name)
                self._rooms[name] = room
                logger.info("Room %s opened", name)
            room.coordinator.attach(connection)
            return room

    async def close(self, room: MeetingRoom, connection: SignalingConnection) -> None:
        """Disconnect ``connection`` and drop the room when nobody is left."""

        await room.disconnect(connection)
        async with self._lock:
            if room.coordinator.connection_count() == 0 and self._rooms.get(room.name) is room:
                self._rooms.pop(room.name, None)
                logger.info("Room %s closed", room.name)

    def get(self, name: str) -> Optional[MeetingRoom]:
        return self._rooms.get(name)

    def names(self) -> list[str]:
        return list(self._rooms)


manager = RoomDirectory()
