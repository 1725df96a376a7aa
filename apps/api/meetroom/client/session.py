"""Client-side meeting session: capture, join, negotiate, chat, and leave."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import InvalidIdentifierError
from ..schemas.rtc import ChatMessage, InboundSignal, MembershipSnapshot, NewcomerNotice
from ..services.attendance import build_attendance_pdf
from ..services.roster import normalise_identifier
from .media import AiortcMediaPath, DeviceCaptureProvider, LocalMedia, MediaCaptureProvider
from .orchestrator import MediaPathFactory, PeerOrchestrator
from .transport import MessageHandler, SignalingClient

Connector = Callable[[str, MessageHandler], Awaitable[SignalingClient]]
ChatCallback = Callable[[ChatMessage], None]

logger = logging.getLogger(__name__)


def room_url(base_url: str, room: str | None) -> str:
    base = base_url.rstrip("/")
    return f"{base}/{room}" if room else base


class MeetingSession:
    """One local participant in a full-mesh meeting."""

    def __init__(
        self,
        identifier: str,
        *,
        room: str | None = None,
        url: str | None = None,
        capture: MediaCaptureProvider | None = None,
        media_path_factory: MediaPathFactory | None = None,
        connector: Connector | None = None,
        on_chat: ChatCallback | None = None,
    ) -> None:
        self.identifier = normalise_identifier(identifier)
        self._url = room_url(url or settings.signaling_url, room)
        self._capture = capture or DeviceCaptureProvider()
        self._media_path_factory = media_path_factory or AiortcMediaPath
        self._connector = connector or SignalingClient.connect
        self._on_chat = on_chat

        self._client: Optional[SignalingClient] = None
        self._orchestrator: Optional[PeerOrchestrator] = None
        self._media: Optional[LocalMedia] = None
        self.active_participants: List[str] = []
        self.remote_tracks: Dict[str, List[Any]] = {}
        self.messages: List[ChatMessage] = []

    @property
    def joined(self) -> bool:
        return self._orchestrator is not None

    @property
    def orchestrator(self) -> Optional[PeerOrchestrator]:
        return self._orchestrator

    @property
    def is_muted(self) -> bool:
        return self._media is None or not self._media.is_enabled("audio")

    @property
    def is_video_off(self) -> bool:
        return self._media is None or not self._media.is_enabled("video")

    async def join(self) -> None:
        """Capture local media, then enter the room.

        Raises ``InvalidIdentifierError`` or ``DuplicateIdentifierError`` when the
        relay refuses the identifier and ``DeviceUnavailableError`` when the
        camera or microphone cannot be opened; nothing is joined in either case.
        """

        if self.joined:
            return
        if not self.identifier:
            raise InvalidIdentifierError("Please enter your roll number to join")

        media = await self._capture.capture()
        try:
            client = await self._connector(self._url, self._handle_message)
        except Exception:
            media.stop()
            raise

        orchestrator = PeerOrchestrator(
            self.identifier,
            client,
            self._media_path_factory,
            local_media=media,
            on_remote_track=self._remote_track_added,
            on_peer_closed=self._peer_closed,
        )
        self._client = client
        self._media = media
        self._orchestrator = orchestrator
        try:
            await client.join(self.identifier)
        except Exception:
            await self._teardown()
            raise
        logger.info("Joined %s as %s", self._url, self.identifier)

    async def leave(self) -> None:
        await self._teardown()
        self.messages.clear()

    def toggle_audio(self) -> bool:
        """Mute or unmute; returns True when audio is now enabled."""

        return self._media.toggle("audio") if self._media else False

    def toggle_video(self) -> bool:
        return self._media.toggle("video") if self._media else False

    async def send_chat(self, text: str) -> Optional[ChatMessage]:
        text = text.strip()
        if not text or self._client is None:
            return None
        message = ChatMessage(sender=self.identifier, text=text)
        await self._client.send_chat(message)
        return message

    def attendance_pdf(self) -> bytes:
        return build_attendance_pdf(self.active_participants)

    async def _handle_message(self, message: dict) -> None:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        kind = message.get("type")
        try:
            if kind == "update-participants":
                snapshot = MembershipSnapshot.model_validate(message)
                self.active_participants = list(snapshot.participants)
                await orchestrator.handle_snapshot(snapshot.participants)
            elif kind == "new-user":
                notice = NewcomerNotice.model_validate(message)
                await orchestrator.handle_newcomer(notice.identifier)
            elif kind in {"offer", "answer", "ice-candidate"}:
                signal = InboundSignal.model_validate(message)
                if signal.type == "offer":
                    await orchestrator.handle_offer(signal.sender, signal.payload)
                elif signal.type == "answer":
                    await orchestrator.handle_answer(signal.sender, signal.payload)
                else:
                    await orchestrator.handle_ice_candidate(signal.sender, signal.payload)
            elif kind == "chat-message":
                chat = ChatMessage.model_validate(message)
                self.messages.append(chat)
                if self._on_chat is not None:
                    self._on_chat(chat)
            else:
                logger.debug("Ignoring unknown message type %r", kind)
        except ValidationError as exc:
            logger.warning("Ignoring malformed %s message: %s", kind, exc)

    def _remote_track_added(self, remote_id: str, track: Any) -> None:
        self.remote_tracks.setdefault(remote_id, []).append(track)

    def _peer_closed(self, remote_id: str) -> None:
        self.remote_tracks.pop(remote_id, None)

    async def _teardown(self) -> None:
        orchestrator, client = self._orchestrator, self._client
        self._orchestrator = None
        self._client = None
        if orchestrator is not None:
            await orchestrator.close()
        if self._media is not None:
            self._media.stop()
            self._media = None
        if client is not None:
            await client.close()
        self.active_participants = []
        self.remote_tracks.clear()
