"""Tests for the per-peer negotiation state machines."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from meetroom.client.media import LocalMedia
from meetroom.client.orchestrator import PeerOrchestrator, PeerState, Role, is_initiator

OFFER = {"type": "offer", "sdp": "remote-offer"}
ANSWER = {"type": "answer", "sdp": "remote-answer"}


class LoopbackTransport:
    """Deliver signals straight to another orchestrator, one task per message."""

    def __init__(self, sender_id: str, network: dict[str, PeerOrchestrator]) -> None:
        self._sender_id = sender_id
        self._network = network
        self.tasks: list[asyncio.Task] = []

    async def send_signal(self, kind: str, to: str, payload: Any) -> None:
        target = self._network[to]
        handler = {
            "offer": target.handle_offer,
            "answer": target.handle_answer,
            "ice-candidate": target.handle_ice_candidate,
        }[kind]
        self.tasks.append(asyncio.get_running_loop().create_task(handler(self._sender_id, payload)))


def test_is_initiator_is_a_strict_total_order():
    pairs = [("10", "9"), ("a", "b"), ("Z", "a"), ("z", "é"), ("1", "10"), ("abc", "abd")]
    for left, right in pairs:
        assert is_initiator(left, right) != is_initiator(right, left)
    assert is_initiator("10", "9")
    assert is_initiator("Z", "a")
    assert is_initiator("z", "é")
    assert not is_initiator("same", "same")


@pytest.mark.asyncio
async def test_lower_identifier_initiates(media_paths, make_transport, run_pending):
    ten_transport, nine_transport = make_transport(), make_transport()
    ten = PeerOrchestrator("10", ten_transport, media_paths, offer_debounce=0)
    nine = PeerOrchestrator("9", nine_transport, media_paths, offer_debounce=0)

    await ten.handle_snapshot(["9", "10"])
    await nine.handle_snapshot(["10", "9"])
    await run_pending()

    assert ten.peer("9").role is Role.INITIATOR
    assert nine.peer("10").role is Role.RESPONDER
    assert [(kind, to) for kind, to, _ in ten_transport.sent] == [("offer", "9")]
    assert nine_transport.sent == []
    assert ten.state_of("9") is PeerState.NEGOTIATING
    assert nine.state_of("10") is PeerState.PENDING


@pytest.mark.asyncio
async def test_offer_waits_for_debounce(media_paths, transport, run_pending):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=60)

    await orchestrator.handle_snapshot(["a", "b"])
    await run_pending()

    assert transport.sent == []
    assert orchestrator.state_of("b") is PeerState.PENDING

    await orchestrator.close()
    await run_pending()
    assert transport.sent == []


@pytest.mark.asyncio
async def test_pair_converges_to_one_connection(media_paths, run_pending):
    network: dict[str, PeerOrchestrator] = {}
    alice = PeerOrchestrator("a", LoopbackTransport("a", network), media_paths, offer_debounce=0)
    bob = PeerOrchestrator("b", LoopbackTransport("b", network), media_paths, offer_debounce=0)
    network.update(a=alice, b=bob)

    await alice.handle_snapshot(["a", "b"])
    await bob.handle_snapshot(["a", "b"])
    await run_pending(30)

    path_a, path_b = alice.peer("b").path, bob.peer("a").path
    assert path_a.events == ["create_offer", "local:offer", "remote:answer"]
    assert path_b.events == ["remote:offer", "create_answer", "local:answer"]
    assert path_a.signaling_state == path_b.signaling_state == "stable"

    await path_a.emit_candidate({"candidate": "a-1"})
    await run_pending(30)
    assert path_b.candidates == [{"candidate": "a-1"}]

    await path_a.emit_state("connected")
    await path_b.emit_state("connected")
    assert alice.state_of("b") is PeerState.CONNECTED
    assert bob.state_of("a") is PeerState.CONNECTED


@pytest.mark.asyncio
async def test_candidate_before_any_record_is_applied_after_offer(media_paths, transport):
    orchestrator = PeerOrchestrator("D", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_ice_candidate("C", {"candidate": "c-1"})
    assert orchestrator.peer("C") is None
    assert media_paths.paths == []

    await orchestrator.handle_offer("C", OFFER)

    path = media_paths.paths[0]
    assert orchestrator.peer("C").role is Role.RESPONDER
    assert path.events == ["remote:offer", "candidate:c-1", "create_answer", "local:answer"]
    assert transport.sent == [("answer", "C", {"type": "answer", "sdp": "answer"})]
    assert orchestrator.state_of("C") is PeerState.NEGOTIATING


@pytest.mark.asyncio
async def test_buffered_candidates_flush_in_arrival_order(media_paths, transport):
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])

    await orchestrator.handle_ice_candidate("a", {"candidate": "c-1"})
    await orchestrator.handle_ice_candidate("a", {"candidate": "c-2"})
    assert orchestrator.peer("a").pending_candidates == [{"candidate": "c-1"}, {"candidate": "c-2"}]

    await orchestrator.handle_offer("a", OFFER)
    await orchestrator.handle_ice_candidate("a", {"candidate": "c-3"})

    path = media_paths.paths[0]
    assert path.events == [
        "remote:offer",
        "candidate:c-1",
        "candidate:c-2",
        "create_answer",
        "local:answer",
        "candidate:c-3",
    ]
    assert orchestrator.peer("a").pending_candidates == []


@pytest.mark.asyncio
async def test_orphan_candidates_dropped_when_sender_not_in_roster(media_paths, transport):
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=60)

    await orchestrator.handle_ice_candidate("ghost", {"candidate": "stale"})
    await orchestrator.handle_snapshot(["b"])
    await orchestrator.handle_snapshot(["b", "ghost"])

    assert orchestrator.peer("ghost").pending_candidates == []
    await orchestrator.close()


@pytest.mark.asyncio
async def test_departed_peer_is_torn_down_once(media_paths, transport, make_track):
    audio, video = make_track("audio"), make_track("video")
    closed: list[str] = []
    orchestrator = PeerOrchestrator(
        "B",
        transport,
        media_paths,
        local_media=LocalMedia([audio, video]),
        offer_debounce=0,
        on_peer_closed=closed.append,
    )

    await orchestrator.handle_snapshot(["A", "B"])
    record = orchestrator.peer("A")
    path = media_paths.paths[0]
    assert path.tracks == [audio, video]
    await orchestrator.handle_ice_candidate("A", {"candidate": "c-1"})

    await orchestrator.handle_snapshot(["B"])
    await orchestrator.handle_snapshot(["B"])

    assert record.state is PeerState.CLOSED
    assert orchestrator.state_of("A") is PeerState.ABSENT
    assert path.close_calls == 1
    assert path.removed_tracks == [audio, video]
    assert record.attached_tracks == []
    assert record.pending_candidates == []
    assert closed == ["A"]
    assert audio.stop_calls == 0


@pytest.mark.asyncio
async def test_offer_to_departed_peer_is_retired_by_next_snapshot(media_paths, transport, run_pending):
    orchestrator = PeerOrchestrator("X", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_snapshot(["X", "Y"])
    await run_pending()
    assert transport.of_kind("offer")[0][1] == "Y"

    await orchestrator.handle_snapshot(["X"])

    assert orchestrator.state_of("Y") is PeerState.ABSENT
    assert media_paths.paths[0].close_calls == 1


@pytest.mark.asyncio
async def test_teardown_during_offer_discards_the_result(media_paths, transport, run_pending):
    media_paths.gate = asyncio.Event()
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_snapshot(["a", "b"])
    await run_pending()
    path = media_paths.paths[0]
    assert orchestrator.state_of("b") is PeerState.NEGOTIATING

    await orchestrator.handle_snapshot(["a"])
    media_paths.gate.set()
    await run_pending()

    assert transport.sent == []
    assert path.local_description is None
    assert path.close_calls == 1


@pytest.mark.asyncio
async def test_reappearing_peer_gets_a_fresh_record(media_paths, transport):
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_snapshot(["a", "b"])
    first = orchestrator.peer("a")
    await orchestrator.handle_snapshot(["b"])
    await orchestrator.handle_snapshot(["a", "b"])

    assert orchestrator.peer("a") is not first
    assert orchestrator.state_of("a") is PeerState.PENDING
    assert len(media_paths.paths) == 2


@pytest.mark.asyncio
async def test_malformed_offer_tears_down_until_next_snapshot(media_paths, transport):
    closed: list[str] = []
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=0, on_peer_closed=closed.append)
    await orchestrator.handle_snapshot(["a", "b"])

    await orchestrator.handle_offer("a", "garbage")

    assert orchestrator.state_of("a") is PeerState.ABSENT
    assert closed == ["a"]
    assert transport.sent == []

    await orchestrator.handle_snapshot(["a", "b"])
    assert orchestrator.state_of("a") is PeerState.PENDING
    assert len(media_paths.paths) == 2


@pytest.mark.asyncio
async def test_failed_media_path_closes_record(media_paths, transport):
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])
    await orchestrator.handle_offer("a", OFFER)

    await media_paths.paths[0].emit_state("failed")

    assert orchestrator.state_of("a") is PeerState.ABSENT
    assert media_paths.paths[0].close_calls == 1


@pytest.mark.asyncio
async def test_offer_ignored_while_own_offer_outstanding(media_paths, transport, run_pending):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])
    await run_pending()
    path = media_paths.paths[0]
    assert path.signaling_state == "have-local-offer"

    await orchestrator.handle_offer("b", OFFER)

    assert transport.of_kind("answer") == []
    assert path.remote_description is None
    assert orchestrator.state_of("b") is PeerState.NEGOTIATING


@pytest.mark.asyncio
async def test_initiator_does_not_yield_before_its_offer(media_paths, transport, run_pending):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=60)
    await orchestrator.handle_snapshot(["a", "b"])

    await orchestrator.handle_offer("b", OFFER)

    assert transport.sent == []
    assert orchestrator.peer("b").role is Role.INITIATOR
    assert orchestrator.state_of("b") is PeerState.PENDING
    await orchestrator.close()


@pytest.mark.asyncio
async def test_duplicate_answer_is_ignored(media_paths, transport, run_pending):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])
    await run_pending()

    await orchestrator.handle_answer("b", ANSWER)
    await orchestrator.handle_answer("b", ANSWER)
    await orchestrator.handle_answer("nobody", ANSWER)

    assert media_paths.paths[0].events.count("remote:answer") == 1


@pytest.mark.asyncio
async def test_new_track_triggers_renegotiation_without_dropping_connection(
    media_paths, transport, make_track, run_pending
):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])
    await run_pending()
    path = media_paths.paths[0]
    await orchestrator.handle_answer("b", ANSWER)
    await path.emit_state("connected")
    assert orchestrator.state_of("b") is PeerState.CONNECTED

    track = make_track("video")
    await orchestrator.add_local_track(track)
    await run_pending()

    assert path.tracks == [track]
    assert len(transport.of_kind("offer")) == 2
    assert orchestrator.state_of("b") is PeerState.CONNECTED

    await orchestrator.handle_answer("b", ANSWER)
    assert path.signaling_state == "stable"
    assert orchestrator.state_of("b") is PeerState.CONNECTED
    assert path.close_calls == 0


@pytest.mark.asyncio
async def test_responder_attaches_new_track_without_offering(media_paths, transport, make_track, run_pending):
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])

    track = make_track("audio")
    await orchestrator.add_local_track(track)
    await run_pending()

    assert media_paths.paths[0].tracks == [track]
    assert transport.sent == []


@pytest.mark.asyncio
async def test_newcomer_notice_and_snapshot_share_one_record(media_paths, transport):
    orchestrator = PeerOrchestrator("z", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_newcomer("c")
    await orchestrator.handle_newcomer("z")
    await orchestrator.handle_snapshot(["c", "z"])

    assert orchestrator.peers() == ["c"]
    assert len(media_paths.paths) == 1


@pytest.mark.asyncio
async def test_remote_tracks_reported_to_callback(media_paths, transport, make_track):
    received: list[tuple[str, Any]] = []
    orchestrator = PeerOrchestrator(
        "b", transport, media_paths, offer_debounce=0, on_remote_track=lambda rid, t: received.append((rid, t))
    )
    await orchestrator.handle_snapshot(["a", "b"])
    remote = make_track("video")

    media_paths.paths[0].emit_track(remote)

    assert received == [("a", remote)]


@pytest.mark.asyncio
async def test_mute_applies_to_every_peer_and_close_releases_media_once(media_paths, transport, make_track):
    audio, video = make_track("audio"), make_track("video")
    media = LocalMedia([audio, video])
    orchestrator = PeerOrchestrator("b", transport, media_paths, local_media=media, offer_debounce=60)
    await orchestrator.handle_snapshot(["a", "b", "c"])

    orchestrator.set_audio_enabled(False)

    assert audio.enabled is False
    assert video.enabled is True
    assert all(audio in path.tracks for path in media_paths.paths)
    assert media.is_enabled("audio") is False

    orchestrator.set_audio_enabled(True)
    assert media.is_enabled("audio") is True

    await orchestrator.close()
    await orchestrator.close()

    assert audio.stop_calls == 1
    assert video.stop_calls == 1
    assert [path.close_calls for path in media_paths.paths] == [1, 1]
    assert orchestrator.peers() == []

    await orchestrator.handle_snapshot(["a", "b"])
    assert orchestrator.peers() == []


@pytest.mark.asyncio
async def test_track_added_during_outstanding_offer_is_offered_after_answer(
    media_paths, transport, make_track, run_pending
):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=0)
    await orchestrator.handle_snapshot(["a", "b"])
    await run_pending()
    path = media_paths.paths[0]
    assert path.signaling_state == "have-local-offer"

    track = make_track("video")
    await orchestrator.add_local_track(track)
    await run_pending()

    assert orchestrator.state_of("b") is PeerState.NEGOTIATING
    assert len(transport.of_kind("offer")) == 1
    assert orchestrator.peer("b").renegotiate_needed is True

    await orchestrator.handle_answer("b", ANSWER)
    await run_pending()

    assert len(transport.of_kind("offer")) == 2
    assert path.tracks == [track]
    assert orchestrator.peer("b").renegotiate_needed is False

    await orchestrator.handle_answer("b", ANSWER)
    await run_pending()
    assert len(transport.of_kind("offer")) == 2


@pytest.mark.asyncio
async def test_stalled_peer_does_not_hold_up_others(media_paths, transport, run_pending):
    media_paths.gate = asyncio.Event()
    orchestrator = PeerOrchestrator("b", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_snapshot(["a", "b", "c"])
    await run_pending()
    assert orchestrator.state_of("c") is PeerState.NEGOTIATING
    assert transport.sent == []

    await orchestrator.handle_offer("a", OFFER)

    assert [(kind, to) for kind, to, _ in transport.sent] == [("answer", "a")]

    media_paths.gate.set()
    await run_pending()
    assert [(kind, to) for kind, to, _ in transport.sent] == [("answer", "a"), ("offer", "c")]


@pytest.mark.asyncio
async def test_unsolicited_offer_keeps_ordering_role(media_paths, transport, run_pending):
    orchestrator = PeerOrchestrator("a", transport, media_paths, offer_debounce=0)

    await orchestrator.handle_offer("b", OFFER)

    assert orchestrator.peer("b").role is Role.INITIATOR
    assert transport.of_kind("answer") == []

    await run_pending()
    assert [to for _, to, _ in transport.of_kind("offer")] == ["b"]
    assert orchestrator.state_of("b") is PeerState.NEGOTIATING
