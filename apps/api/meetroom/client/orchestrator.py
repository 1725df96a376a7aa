"""Per-peer negotiation state machines for a full-mesh meeting.

Every remote participant gets one ``PeerRecord``. Of each pair, the side
whose identifier sorts first initiates, so the two ends never both send an
offer for the same pair. Records are created from membership snapshots,
newcomer notices, or an unsolicited offer, and closed as soon as the remote
disappears from a snapshot. Failures tear the record down; the next snapshot
that still lists the remote builds a fresh one.

Events for one remote are serialized by that record's lock. Events for
different remotes interleave freely. Teardown never waits on the lock, so
every suspension point re-checks that the record is still current before
acting on the result.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from ..core.config import settings
from ..core.errors import NegotiationFailureError
from .media import Candidate, Description, LocalMedia, MediaPath

MediaPathFactory = Callable[[], MediaPath]
RemoteTrackCallback = Callable[[str, Any], None]
PeerClosedCallback = Callable[[str], None]

logger = logging.getLogger(__name__)


class PeerState(str, enum.Enum):
    ABSENT = "absent"
    PENDING = "pending"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


def is_initiator(local_id: str, remote_id: str) -> bool:
    """True when ``local_id`` sorts before ``remote_id`` byte-wise in UTF-8."""

    return local_id.encode("utf-8") < remote_id.encode("utf-8")


def role_for(local_id: str, remote_id: str) -> Role:
    return Role.INITIATOR if is_initiator(local_id, remote_id) else Role.RESPONDER


class SignalSender(Protocol):
    async def send_signal(self, kind: str, to: str, payload: Any) -> None: ...


@dataclass(eq=False)
class PeerRecord:
    """Negotiation state held for one remote participant."""

    remote_id: str
    role: Role
    path: MediaPath
    state: PeerState = PeerState.ABSENT
    attached_tracks: List[Any] = field(default_factory=list)
    pending_candidates: List[Candidate] = field(default_factory=list)
    has_remote_description: bool = False
    renegotiate_needed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    offer_task: Optional[asyncio.Task] = None


class PeerOrchestrator:
    """Own the peer records of one local participant."""

    def __init__(
        self,
        local_id: str,
        transport: SignalSender,
        media_path_factory: MediaPathFactory,
        *,
        local_media: LocalMedia | None = None,
        offer_debounce: float | None = None,
        offer_debounce_per_peer: float | None = None,
        on_remote_track: RemoteTrackCallback | None = None,
        on_peer_closed: PeerClosedCallback | None = None,
    ) -> None:
        self._local_id = local_id
        self._transport = transport
        self._media_path_factory = media_path_factory
        self._local_media = local_media
        self._offer_debounce = (
            settings.offer_debounce_seconds if offer_debounce is None else offer_debounce
        )
        self._offer_debounce_per_peer = (
            settings.offer_debounce_per_peer_seconds
            if offer_debounce_per_peer is None
            else offer_debounce_per_peer
        )
        self._on_remote_track = on_remote_track
        self._on_peer_closed = on_peer_closed
        self._records: Dict[str, PeerRecord] = {}
        self._orphan_candidates: Dict[str, List[Candidate]] = {}
        self._closed = False

    @property
    def local_id(self) -> str:
        return self._local_id

    @property
    def local_media(self) -> LocalMedia | None:
        return self._local_media

    def peer(self, remote_id: str) -> Optional[PeerRecord]:
        return self._records.get(remote_id)

    def peers(self) -> list[str]:
        return list(self._records)

    def state_of(self, remote_id: str) -> PeerState:
        record = self._records.get(remote_id)
        return record.state if record else PeerState.ABSENT

    # -- roster events -------------------------------------------------

    async def handle_snapshot(self, participants: Iterable[str]) -> None:
        """Reconcile peer records against the authoritative membership list."""

        if self._closed:
            return
        roster = [participant for participant in participants if isinstance(participant, str) and participant]
        present = set(roster)

        for remote_id in list(self._orphan_candidates):
            if remote_id not in present:
                self._orphan_candidates.pop(remote_id, None)

        for remote_id in roster:
            if remote_id != self._local_id and remote_id not in self._records:
                self._open_record(remote_id)

        for remote_id, record in list(self._records.items()):
            if remote_id not in present:
                await self._close_record(record, "left the meeting")

    async def handle_newcomer(self, remote_id: str) -> None:
        if self._closed or not remote_id or remote_id == self._local_id:
            return
        if remote_id not in self._records:
            self._open_record(remote_id)

    # -- negotiation events --------------------------------------------

    async def handle_offer(self, sender: str, description: Description) -> None:
        if self._closed or not sender or sender == self._local_id:
            return
        record = self._records.get(sender)
        if record is None:
            record = self._open_record(sender)
            if record is None:
                return

        async with record.lock:
            if not self._is_current(record):
                return
            if not self._accepts_offer(record):
                logger.info("Ignoring offer from %s: our own offer takes precedence", sender)
                return

            if record.state is not PeerState.CONNECTED:
                record.state = PeerState.NEGOTIATING
            try:
                await record.path.set_remote_description(description)
                if not self._is_current(record):
                    return
                record.has_remote_description = True
                await self._flush_candidates(record)
                if not self._is_current(record):
                    return

                answer = await record.path.create_answer()
                if not self._is_current(record):
                    return
                await record.path.set_local_description(answer)
                if not self._is_current(record):
                    return
                await self._transport.send_signal("answer", sender, record.path.local_description or answer)
            except Exception as exc:  # noqa: BLE001 - any failure retires the record
                await self._fail(record, exc)
                return
            self._mark_if_established(record)

    async def handle_answer(self, sender: str, description: Description) -> None:
        record = self._records.get(sender)
        if record is None:
            logger.debug("Ignoring answer from unknown peer %s", sender)
            return

        async with record.lock:
            if not self._is_current(record):
                return
            if record.path.signaling_state != "have-local-offer":
                logger.debug("Ignoring duplicate answer from %s", sender)
                return
            try:
                await record.path.set_remote_description(description)
                if not self._is_current(record):
                    return
                record.has_remote_description = True
                await self._flush_candidates(record)
            except Exception as exc:  # noqa: BLE001 - any failure retires the record
                await self._fail(record, exc)
                return
            self._mark_if_established(record)
            if record.renegotiate_needed and self._is_current(record):
                self._schedule_offer(record)

    async def handle_ice_candidate(self, sender: str, candidate: Candidate) -> None:
        if self._closed or not sender or sender == self._local_id:
            return
        record = self._records.get(sender)
        if record is None:
            self._orphan_candidates.setdefault(sender, []).append(candidate)
            logger.debug("Buffered ICE candidate from %s ahead of its peer record", sender)
            return

        async with record.lock:
            if not self._is_current(record):
                return
            if not record.has_remote_description:
                record.pending_candidates.append(candidate)
                return
            await self._apply_candidate(record, candidate)

    # -- local intent --------------------------------------------------

    async def add_local_track(self, track: Any) -> None:
        """Attach a newly captured track everywhere and renegotiate as initiator."""

        if self._local_media is None:
            self._local_media = LocalMedia([track])
        else:
            self._local_media.add(track)
        for record in list(self._records.values()):
            self._attach(record, track)
        self.renegotiate()

    def renegotiate(self, remote_id: str | None = None) -> None:
        """Re-offer to one or all responders without dropping the media path."""

        if remote_id is None:
            records = list(self._records.values())
        else:
            record = self._records.get(remote_id)
            records = [record] if record else []
        for record in records:
            if record.role is not Role.INITIATOR or not self._is_current(record):
                continue
            if record.path.signaling_state != "stable":
                # Re-offered once the outstanding answer lands.
                record.renegotiate_needed = True
                continue
            self._schedule_offer(record)

    def set_audio_enabled(self, enabled: bool) -> None:
        if self._local_media:
            self._local_media.set_enabled("audio", enabled)

    def set_video_enabled(self, enabled: bool) -> None:
        if self._local_media:
            self._local_media.set_enabled("video", enabled)

    async def close(self) -> None:
        """End the local session: close every peer and release local media once."""

        self._closed = True
        for record in list(self._records.values()):
            await self._close_record(record, "local session ended")
        self._orphan_candidates.clear()
        if self._local_media is not None:
            self._local_media.stop()

    # -- internals -----------------------------------------------------

    def _open_record(self, remote_id: str, role: Role | None = None) -> Optional[PeerRecord]:
        try:
            path = self._media_path_factory()
        except Exception:  # noqa: BLE001 - the next snapshot retries
            logger.exception("Could not create a media path for %s", remote_id)
            return None

        record = PeerRecord(remote_id=remote_id, role=role or role_for(self._local_id, remote_id), path=path)
        self._records[remote_id] = record
        record.pending_candidates.extend(self._orphan_candidates.pop(remote_id, []))
        self._wire(record)
        if self._local_media is not None:
            for track in self._local_media.tracks:
                self._attach(record, track)
        record.state = PeerState.PENDING
        logger.info("Setting up peer connection with %s as %s", remote_id, record.role.value)

        if record.role is Role.INITIATOR:
            self._schedule_offer(record)
        return record

    def _wire(self, record: PeerRecord) -> None:
        async def _on_candidate(candidate: Candidate) -> None:
            if self._is_current(record):
                await self._transport.send_signal("ice-candidate", record.remote_id, candidate)

        async def _on_state_change(state: str) -> None:
            if not self._is_current(record):
                return
            if state == "connected":
                record.state = PeerState.CONNECTED
                logger.info("Media path to %s established", record.remote_id)
            elif state == "failed":
                await self._fail(record, NegotiationFailureError("media path failed"))

        def _on_track(track: Any) -> None:
            if self._is_current(record) and self._on_remote_track is not None:
                self._on_remote_track(record.remote_id, track)

        record.path.on_ice_candidate(_on_candidate)
        record.path.on_state_change(_on_state_change)
        record.path.on_track(_on_track)

    def _attach(self, record: PeerRecord, track: Any) -> None:
        if any(existing is track for existing in record.attached_tracks):
            return
        record.path.add_track(track)
        record.attached_tracks.append(track)

    def _offer_delay(self) -> float:
        pending = sum(1 for record in self._records.values() if record.state is PeerState.PENDING)
        return self._offer_debounce + self._offer_debounce_per_peer * max(pending - 1, 0)

    def _schedule_offer(self, record: PeerRecord) -> None:
        if record.offer_task is not None and not record.offer_task.done():
            # An offer already under way may predate the latest track.
            record.renegotiate_needed = True
            return
        record.offer_task = asyncio.create_task(self._offer_after(record, self._offer_delay()))

    async def _offer_after(self, record: PeerRecord, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._send_offer(record)

    async def _send_offer(self, record: PeerRecord) -> None:
        async with record.lock:
            if not self._is_current(record):
                return
            if record.path.signaling_state != "stable":
                logger.debug("Offer to %s already outstanding", record.remote_id)
                record.renegotiate_needed = True
                return
            record.renegotiate_needed = False
            if record.state is not PeerState.CONNECTED:
                record.state = PeerState.NEGOTIATING
            try:
                offer = await record.path.create_offer()
                if not self._is_current(record):
                    return
                await record.path.set_local_description(offer)
                if not self._is_current(record):
                    return
                await self._transport.send_signal("offer", record.remote_id, record.path.local_description or offer)
            except Exception as exc:  # noqa: BLE001 - any failure retires the record
                await self._fail(record, exc)

    def _accepts_offer(self, record: PeerRecord) -> bool:
        if record.path.signaling_state != "stable":
            # Our own offer is already applied.
            return False
        if record.role is Role.INITIATOR:
            # Still idle: yield only if the compare rule makes us the responder.
            return not is_initiator(self._local_id, record.remote_id)
        return True

    async def _flush_candidates(self, record: PeerRecord) -> None:
        while record.pending_candidates and self._is_current(record):
            await self._apply_candidate(record, record.pending_candidates.pop(0))

    async def _apply_candidate(self, record: PeerRecord, candidate: Candidate) -> None:
        try:
            await record.path.add_ice_candidate(candidate)
        except Exception as exc:  # noqa: BLE001 - one bad candidate is not fatal
            logger.warning("Skipping ICE candidate from %s: %s", record.remote_id, exc)

    def _mark_if_established(self, record: PeerRecord) -> None:
        if self._is_current(record) and record.path.connection_state == "connected":
            record.state = PeerState.CONNECTED

    def _is_current(self, record: PeerRecord) -> bool:
        return record.state is not PeerState.CLOSED and self._records.get(record.remote_id) is record

    async def _fail(self, record: PeerRecord, exc: Exception) -> None:
        logger.warning(
            "Negotiation with %s failed (%s); waiting for the next roster update", record.remote_id, exc
        )
        await self._close_record(record, "negotiation failed")

    async def _close_record(self, record: PeerRecord, reason: str) -> None:
        if record.state is PeerState.CLOSED:
            return
        record.state = PeerState.CLOSED
        if self._records.get(record.remote_id) is record:
            del self._records[record.remote_id]

        task = record.offer_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        for track in record.attached_tracks:
            try:
                record.path.remove_track(track)
            except Exception as exc:  # noqa: BLE001 - the path is closed next anyway
                logger.debug("Detaching track from %s failed: %s", record.remote_id, exc)
        record.attached_tracks.clear()
        record.pending_candidates.clear()

        try:
            await record.path.close()
        except Exception as exc:  # noqa: BLE001 - teardown must finish
            logger.warning("Closing media path to %s failed: %s", record.remote_id, exc)

        logger.info("Peer %s closed: %s", record.remote_id, reason)
        if self._on_peer_closed is not None:
            self._on_peer_closed(record.remote_id)
