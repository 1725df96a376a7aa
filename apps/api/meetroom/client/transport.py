"""WebSocket client for the signaling relay."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional, Set

import websockets

from ..core.errors import error_for
from ..schemas.rtc import ChatMessage, JoinRequest, JoinResult, OutboundSignal

MessageHandler = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


class SignalingClient:
    """Handle the lifespan of one connection to the signaling relay.

    Inbound messages are handed to ``on_message`` as independent tasks so a
    slow negotiation step with one peer does not hold up the others.
    """

    def __init__(self, ws: Any, on_message: MessageHandler | None = None) -> None:
        self._ws = ws
        self._on_message = on_message
        self._receive_task: asyncio.Task[None] | None = None
        self._join_waiter: Optional[asyncio.Future[JoinResult]] = None
        self._handlers: Set[asyncio.Task[None]] = set()

    @classmethod
    async def connect(cls, url: str, on_message: MessageHandler | None = None) -> "SignalingClient":
        ws = await websockets.connect(url)
        client = cls(ws, on_message=on_message)
        client.start()
        return client

    async def __aenter__(self) -> "SignalingClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def start(self) -> None:
        if self._receive_task is None:
            self._receive_task = asyncio.create_task(self._receive_loop())

    async def close(self) -> None:
        if self._receive_task:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        handlers = [task for task in self._handlers if task is not asyncio.current_task()]
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)
        self._fail_join_waiter(ConnectionError("Signaling connection closed"))
        await self._ws.close()

    async def join(self, identifier: str) -> None:
        """Ask the relay to admit ``identifier``; raise the mapped error on refusal."""

        loop = asyncio.get_running_loop()
        self._join_waiter = loop.create_future()
        await self._send(JoinRequest(identifier=identifier).model_dump())
        result = await self._join_waiter
        if not result.success:
            raise error_for(result.code, result.error)

    async def send_signal(self, kind: str, to: str, payload: Any) -> None:
        await self._send(OutboundSignal(type=kind, to=to, payload=payload).model_dump())

    async def send_chat(self, message: ChatMessage) -> None:
        await self._send(message.model_dump(mode="json"))

    async def _send(self, message: dict) -> None:
        await self._ws.send(json.dumps(message))

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring non-JSON frame from relay")
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("type") == "join-result":
                    self._resolve_join(message)
                elif self._on_message is not None:
                    self._spawn(message)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)
        finally:
            self._fail_join_waiter(ConnectionError("Signaling connection closed"))

    def _resolve_join(self, message: dict) -> None:
        waiter = self._join_waiter
        if waiter is None or waiter.done():
            logger.debug("Unexpected join-result from relay")
            return
        waiter.set_result(JoinResult.model_validate(message))

    def _fail_join_waiter(self, exc: Exception) -> None:
        waiter = self._join_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(exc)

    def _spawn(self, message: dict) -> None:
        task = asyncio.create_task(self._dispatch(message))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _dispatch(self, message: dict) -> None:
        if self._on_message is None:
            return
        try:
            await self._on_message(message)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - one bad message must not stop the loop
            logger.exception("Failed handling %s from relay", message.get("type"))
