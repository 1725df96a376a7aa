"""Shared fakes for the client-side tests."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1


class FakeMediaPath:
    """Media path that tracks the signaling state like a browser would."""

    def __init__(self) -> None:
        self.signaling_state = "stable"
        self.connection_state = "new"
        self.local_description: dict | None = None
        self.remote_description: dict | None = None
        self.tracks: list[Any] = []
        self.removed_tracks: list[Any] = []
        self.candidates: list[Any] = []
        self.events: list[str] = []
        self.close_calls = 0
        self.offer_gate: asyncio.Event | None = None
        self._handlers: dict[str, Any] = {}

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    def remove_track(self, track: Any) -> None:
        self.removed_tracks.append(track)

    async def create_offer(self) -> dict:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        self.events.append("create_offer")
        return {"type": "offer", "sdp": f"offer-{len(self.events)}"}

    async def create_answer(self) -> dict:
        self.events.append("create_answer")
        return {"type": "answer", "sdp": "answer"}

    async def set_local_description(self, description: dict) -> None:
        self.events.append(f"local:{description['type']}")
        self.local_description = description
        self.signaling_state = "have-local-offer" if description["type"] == "offer" else "stable"

    async def set_remote_description(self, description: Any) -> None:
        if not isinstance(description, dict) or description.get("type") not in {"offer", "answer"}:
            raise ValueError("malformed session description")
        self.events.append(f"remote:{description['type']}")
        self.remote_description = description
        self.signaling_state = "have-remote-offer" if description["type"] == "offer" else "stable"

    async def add_ice_candidate(self, candidate: Any) -> None:
        self.events.append(f"candidate:{candidate['candidate']}")
        self.candidates.append(candidate)

    def on_ice_candidate(self, handler) -> None:
        self._handlers["candidate"] = handler

    def on_state_change(self, handler) -> None:
        self._handlers["state"] = handler

    def on_track(self, handler) -> None:
        self._handlers["track"] = handler

    async def emit_state(self, state: str) -> None:
        self.connection_state = state
        await self._handlers["state"](state)

    async def emit_candidate(self, candidate: dict) -> None:
        await self._handlers["candidate"](candidate)

    def emit_track(self, track: Any) -> None:
        self._handlers["track"](track)

    async def close(self) -> None:
        self.close_calls += 1
        self.connection_state = "closed"


class MediaPathFactory:
    def __init__(self) -> None:
        self.paths: list[FakeMediaPath] = []
        self.gate: asyncio.Event | None = None

    def __call__(self) -> FakeMediaPath:
        path = FakeMediaPath()
        path.offer_gate = self.gate
        self.paths.append(path)
        return path


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Any]] = []

    async def send_signal(self, kind: str, to: str, payload: Any) -> None:
        self.sent.append((kind, to, payload))

    def of_kind(self, kind: str) -> list[tuple[str, str, Any]]:
        return [item for item in self.sent if item[0] == kind]


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def media_paths() -> MediaPathFactory:
    return MediaPathFactory()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_transport():
    return RecordingTransport


@pytest.fixture
def make_track():
    return FakeTrack


@pytest.fixture
def run_pending():
    return settle
