"""Presence tracking: join, disconnect, and membership broadcasts."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, Optional

from ..core.errors import DuplicateIdentifierError
from .roster import RosterRegistry, normalise_identifier

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


class ConnectionPhase(str, enum.Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    LEFT = "left"


@dataclass(slots=True, eq=False)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable
    phase: ConnectionPhase = field(default=ConnectionPhase.CONNECTED)
    identity: Optional[str] = None


class PresenceCoordinator:
    """Drive roster mutations and fan out membership snapshots."""

    def __init__(self, registry: RosterRegistry[SignalingConnection]) -> None:
        self._registry = registry
        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def registry(self) -> RosterRegistry[SignalingConnection]:
        return self._registry

    def attach(self, connection: SignalingConnection) -> None:
        self._connections[connection.connection_id] = connection

    def identity_of(self, connection: SignalingConnection) -> Optional[str]:
        """Return the participant identifier when the connection has joined."""

        if connection.phase is not ConnectionPhase.JOINED:
            return None
        return connection.identity

    def connection_count(self) -> int:
        return len(self._connections)

    async def join(self, connection: SignalingConnection, identifier: object) -> list[str]:
        """Register ``connection`` under ``identifier`` and announce it.

        Raises ``InvalidIdentifierError`` or ``DuplicateIdentifierError``; in
        both cases the roster is untouched and nothing is broadcast.
        """

        identifier = normalise_identifier(identifier)
        async with self._lock:
            if connection.phase is not ConnectionPhase.CONNECTED:
                raise DuplicateIdentifierError("Connection already joined the room")
            self._registry.register(identifier, connection)
            connection.phase = ConnectionPhase.JOINED
            connection.identity = identifier
            self._connections[connection.connection_id] = connection

            participants = self._registry.snapshot()
            logger.info("Participant %s joined (%d present)", identifier, len(participants))
            await self._send_all(
                self._registry.handles(),
                {"type": "update-participants", "participants": participants},
            )
            await self._send_all(
                (handle for handle in self._registry.handles() if handle is not connection),
                {"type": "new-user", "identifier": identifier},
            )
            return participants

    async def disconnect(self, connection: SignalingConnection) -> Optional[str]:
        """Forget ``connection``; broadcast the new roster if it had joined."""

        async with self._lock:
            self._connections.pop(connection.connection_id, None)
            if connection.phase is not ConnectionPhase.JOINED:
                connection.phase = ConnectionPhase.LEFT
                return None

            identifier = self._registry.unregister(connection)
            connection.phase = ConnectionPhase.LEFT
            participants = self._registry.snapshot()
            logger.info("Participant %s left (%d present)", identifier, len(participants))
            await self._send_all(
                self._registry.handles(),
                {"type": "update-participants", "participants": participants},
            )
            return identifier

    async def broadcast(self, message: dict) -> None:
        """Send ``message`` to every joined participant."""

        await self._send_all(self._registry.handles(), message)

    async def _send_all(self, connections: Iterable[SignalingConnection], message: dict) -> None:
        targets = list(connections)
        if not targets:
            return
        results = await asyncio.gather(
            *(connection.send(message) for connection in targets), return_exceptions=True
        )
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Dropping %s for %s: %s", message.get("type"), connection.identity, result
                )
