"""Local media capture and the per-peer media path used by the orchestrator.

The orchestrator only talks to the ``MediaPath`` and ``MediaCaptureProvider``
protocols. ``AiortcMediaPath`` and ``DeviceCaptureProvider`` are the aiortc
backed implementations used by the headless client; tests substitute fakes.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from av import AudioFrame, VideoFrame

from ..core.config import settings
from ..core.errors import DeviceUnavailableError, NegotiationFailureError

Description = dict
Candidate = dict
CandidateHandler = Callable[[Candidate], Awaitable[None]]
StateHandler = Callable[[str], Awaitable[None]]
TrackHandler = Callable[[Any], None]

logger = logging.getLogger(__name__)

# One relay per process fans each captured track out to every peer connection.
_shared_relay = MediaRelay()


class MediaPath(Protocol):
    """Capabilities the orchestrator needs from one peer connection."""

    @property
    def signaling_state(self) -> str: ...

    @property
    def connection_state(self) -> str: ...

    @property
    def local_description(self) -> Optional[Description]: ...

    def add_track(self, track: Any) -> None: ...

    def remove_track(self, track: Any) -> None: ...

    async def create_offer(self) -> Description: ...

    async def create_answer(self) -> Description: ...

    async def set_local_description(self, description: Description) -> None: ...

    async def set_remote_description(self, description: Description) -> None: ...

    async def add_ice_candidate(self, candidate: Candidate) -> None: ...

    def on_ice_candidate(self, handler: CandidateHandler) -> None: ...

    def on_state_change(self, handler: StateHandler) -> None: ...

    def on_track(self, handler: TrackHandler) -> None: ...

    async def close(self) -> None: ...


class MediaCaptureProvider(Protocol):
    async def capture(self) -> "LocalMedia": ...


class LocalMedia:
    """Captured camera/microphone tracks shared by every peer connection.

    Enabling or disabling a kind affects all peers at once. ``stop`` releases
    the devices exactly once no matter how many peers hold the tracks.
    """

    def __init__(self, tracks: Iterable[Any]) -> None:
        self._tracks = list(tracks)
        self._stopped = False

    @property
    def tracks(self) -> list[Any]:
        return list(self._tracks)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def add(self, track: Any) -> None:
        if self._stopped:
            raise DeviceUnavailableError("Local media was already released")
        self._tracks.append(track)

    def tracks_of(self, kind: str) -> list[Any]:
        return [track for track in self._tracks if track.kind == kind]

    def is_enabled(self, kind: str) -> bool:
        tracks = self.tracks_of(kind)
        return bool(tracks) and all(getattr(track, "enabled", True) for track in tracks)

    def set_enabled(self, kind: str, enabled: bool) -> None:
        for track in self.tracks_of(kind):
            track.enabled = enabled

    def toggle(self, kind: str) -> bool:
        """Flip ``kind`` on or off and return the new enabled state."""

        if not self.tracks_of(kind):
            return False
        enabled = not self.is_enabled(kind)
        self.set_enabled(kind, enabled)
        return enabled

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks:
            track.stop()
        logger.info("Local media released (%d tracks)", len(self._tracks))


class ToggleableTrack(MediaStreamTrack):
    """Relay frames from a source track, blanking them while disabled."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self):
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, AudioFrame):
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
            return frame
        if isinstance(frame, VideoFrame):
            blank = frame.reformat(format="yuv420p")
            for index, plane in enumerate(blank.planes):
                plane.update(bytes([0 if index == 0 else 128]) * plane.buffer_size)
            blank.pts = frame.pts
            blank.time_base = frame.time_base
            return blank
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class DeviceCaptureProvider:
    """Open the configured camera/microphone with aiortc's ``MediaPlayer``."""

    def __init__(
        self,
        device: str | None = None,
        fmt: str | None = None,
        options: dict[str, str] | None = None,
    ) -> None:
        self._device = device if device is not None else settings.capture_device
        self._format = fmt if fmt is not None else settings.capture_format
        self._options = options or {}

    async def capture(self) -> LocalMedia:
        if not self._device:
            raise DeviceUnavailableError("No capture device configured")

        loop = asyncio.get_running_loop()

        def _open() -> MediaPlayer:
            return MediaPlayer(self._device, format=self._format or None, options=self._options)

        try:
            player = await loop.run_in_executor(None, _open)
        except Exception as exc:  # noqa: BLE001 - any open failure means no device
            raise DeviceUnavailableError(f"Could not access camera or microphone: {exc}") from exc

        tracks = [ToggleableTrack(track) for track in (player.audio, player.video) if track is not None]
        if not tracks:
            raise DeviceUnavailableError(f"{self._device} exposes no audio or video")
        return LocalMedia(tracks)


def _parse_description(description: Description) -> RTCSessionDescription:
    if not isinstance(description, dict):
        raise NegotiationFailureError("Session description must be an object")
    sdp = description.get("sdp")
    kind = description.get("type")
    if not isinstance(sdp, str) or kind not in {"offer", "answer", "pranswer", "rollback"}:
        raise NegotiationFailureError("Malformed session description")
    return RTCSessionDescription(sdp=sdp, type=kind)


class AiortcMediaPath:
    """``MediaPath`` over ``aiortc.RTCPeerConnection``.

    aiortc embeds its gathered candidates in the local description instead of
    trickling them, so ``on_ice_candidate`` handlers seldom fire. Candidates
    trickled by browser peers are still applied through ``add_ice_candidate``.

    Local tracks are attached through a ``MediaRelay`` subscription, so one
    capture device feeds every peer connection with the full frame rate.
    """

    def __init__(self, ice_servers: Iterable[str] | None = None, relay: MediaRelay | None = None) -> None:
        urls = list(ice_servers if ice_servers is not None else settings.ice_servers)
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._relay = relay or _shared_relay
        self._senders: dict[int, tuple[Any, MediaStreamTrack]] = {}

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> Optional[Description]:
        description = self._pc.localDescription
        if description is None:
            return None
        return {"type": description.type, "sdp": description.sdp}

    def add_track(self, track: Any) -> None:
        # Each connection pulls frames on its own; subscribe so peers do not
        # split one capture queue between them.
        subscription = self._relay.subscribe(track)
        self._senders[id(track)] = (self._pc.addTrack(subscription), subscription)

    def remove_track(self, track: Any) -> None:
        entry = self._senders.pop(id(track), None)
        if entry is not None:
            sender, subscription = entry
            sender.replaceTrack(None)
            subscription.stop()

    async def create_offer(self) -> Description:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Description:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Description) -> None:
        await self._pc.setLocalDescription(_parse_description(description))

    async def set_remote_description(self, description: Description) -> None:
        await self._pc.setRemoteDescription(_parse_description(description))

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        if not isinstance(candidate, dict):
            raise NegotiationFailureError("ICE candidate must be an object")
        line = candidate.get("candidate") or ""
        if not line:
            return
        if line.startswith("candidate:"):
            line = line.split(":", 1)[1]
        parsed = candidate_from_sdp(line)
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(parsed)

    def on_ice_candidate(self, handler: CandidateHandler) -> None:
        @self._pc.on("icecandidate")
        async def _on_candidate(candidate) -> None:
            if candidate is None:
                return
            await handler(
                {
                    "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                }
            )

    def on_state_change(self, handler: StateHandler) -> None:
        @self._pc.on("connectionstatechange")
        async def _on_state_change() -> None:
            await handler(self._pc.connectionState)

    def on_track(self, handler: TrackHandler) -> None:
        self._pc.on("track", handler)

    async def close(self) -> None:
        await self._pc.close()
