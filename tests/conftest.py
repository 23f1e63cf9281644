"""Shared test fakes."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from peercall.media.session import (
    InvalidStateError,
    MediaSessionListener,
    SignalingState,
)
from peercall.signaling.envelope import Envelope, IceCandidate, SessionDescription
from peercall.signaling.relay import create_app


class FakeMediaSession:
    """In-memory MediaSession that follows the offer/answer state rules."""

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.signaling_state = SignalingState.STABLE
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.candidates: list[IceCandidate] = []
        self.tracks: list[Any] = []
        self.calls: list[str] = []
        self.closed = False
        self.fail_candidates = False
        self._listener: MediaSessionListener | None = None
        self._offers = 0

    def attach(self, listener: MediaSessionListener) -> None:
        self._listener = listener

    def detach(self) -> None:
        self._listener = None

    @property
    def listener(self) -> MediaSessionListener | None:
        return self._listener

    def _set_state(self, state: SignalingState) -> None:
        if state != self.signaling_state:
            self.signaling_state = state
            if self._listener is not None:
                self._listener.on_signaling_state_change(state)

    async def create_offer(self) -> SessionDescription:
        self.calls.append("create_offer")
        self._offers += 1
        return SessionDescription("offer", f"v=0 {self.name} offer {self._offers}")

    async def create_answer(self) -> SessionDescription:
        self.calls.append("create_answer")
        if self.signaling_state != SignalingState.HAVE_REMOTE_OFFER:
            raise InvalidStateError("no remote offer")
        return SessionDescription("answer", f"v=0 {self.name} answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.calls.append(f"set_local:{description.type}")
        if description.type == "offer":
            if self.signaling_state != SignalingState.STABLE:
                raise InvalidStateError(f"local offer in {self.signaling_state}")
            self.local_description = description
            self._set_state(SignalingState.HAVE_LOCAL_OFFER)
        else:
            if self.signaling_state != SignalingState.HAVE_REMOTE_OFFER:
                raise InvalidStateError(f"local answer in {self.signaling_state}")
            self.local_description = description
            self._set_state(SignalingState.STABLE)

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.calls.append(f"set_remote:{description.type}")
        if description.type == "offer":
            if self.signaling_state not in (
                SignalingState.STABLE,
                SignalingState.HAVE_REMOTE_OFFER,
            ):
                raise InvalidStateError(f"remote offer in {self.signaling_state}")
            self.remote_description = description
            self._set_state(SignalingState.HAVE_REMOTE_OFFER)
        else:
            if self.signaling_state != SignalingState.HAVE_LOCAL_OFFER:
                raise InvalidStateError(f"remote answer in {self.signaling_state}")
            self.remote_description = description
            self._set_state(SignalingState.STABLE)

    async def rollback(self) -> None:
        self.calls.append("rollback")
        if self.signaling_state == SignalingState.HAVE_LOCAL_OFFER:
            self.local_description = None
            self._set_state(SignalingState.STABLE)

    async def add_candidate(self, candidate: IceCandidate) -> None:
        self.calls.append(f"add_candidate:{candidate.candidate}")
        if self.remote_description is None:
            raise InvalidStateError("no remote description")
        if self.fail_candidates:
            raise ValueError("bad candidate")
        self.candidates.append(candidate)

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)
        if self._listener is not None:
            self._listener.on_negotiation_needed()

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True
        self._listener = None
        self.signaling_state = SignalingState.CLOSED


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeSink:
    def __init__(self) -> None:
        self.tracks: dict[str, Any] = {}
        self.attached: list[Any] = []
        self.clears = 0

    async def attach(self, track: Any) -> None:
        self.tracks[track.kind] = track
        self.attached.append(track)

    async def clear(self) -> None:
        self.tracks.clear()
        self.clears += 1


class FakePresenter:
    def __init__(self) -> None:
        self.local = FakeSink()
        self.remote = FakeSink()
        self.states: list[str] = []

    def connection_state_changed(self, state: str) -> None:
        self.states.append(state)


class FakeLocalMedia:
    def __init__(self) -> None:
        self.tracks = [FakeTrack("audio"), FakeTrack("video")]
        self.stopped = False

    def outbound_tracks(self) -> list[FakeTrack]:
        return list(self.tracks)

    def preview_tracks(self) -> list[FakeTrack]:
        return list(self.tracks)

    def stop(self) -> None:
        self.stopped = True
        for track in self.tracks:
            track.stop()


class Outbox:
    """Collects envelopes a coordinator sends."""

    def __init__(self) -> None:
        self.sent: list[Envelope] = []

    async def __call__(self, envelope: Envelope) -> None:
        self.sent.append(envelope)

    def kinds(self) -> list[str]:
        return [e.kind.name for e in self.sent]


def make_candidate(n: int) -> IceCandidate:
    return IceCandidate(
        candidate=f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000{n} typ host",
        sdp_mid="0",
        sdp_mline_index=0,
    )


@pytest.fixture
def media_session() -> FakeMediaSession:
    return FakeMediaSession()


@pytest.fixture
def presenter() -> FakePresenter:
    return FakePresenter()


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest_asyncio.fixture
async def relay_server():
    """A relay listening on a free local port."""
    async with TestServer(create_app()) as server:
        yield server
