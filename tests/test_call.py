"""End-to-end tests for the call controller over a real relay."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp.test_utils import unused_port
from conftest import FakeLocalMedia, FakeMediaSession, FakePresenter, FakeSink

from peercall.call import Call
from peercall.config import Settings
from peercall.media.capture import MediaAcquisitionError
from peercall.media.session import SignalingState
from peercall.signaling.channel import SignalingError


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Peer:
    """A call wired to fakes so tests can inspect each side."""

    def __init__(self, settings: Settings, name: str) -> None:
        self.session = FakeMediaSession(name)
        self.media = FakeLocalMedia()
        self.presenter = FakePresenter()
        self.acquired = 0
        self.call = Call(
            settings,
            "room42",
            self.presenter,
            media_factory=self._media,
            session_factory=lambda: self.session,
        )

    async def _media(self) -> FakeLocalMedia:
        self.acquired += 1
        return self.media


def _settings(url: str) -> Settings:
    return Settings(signaling_url=url, stun_servers=())


@pytest.mark.asyncio
async def test_two_calls_negotiate_through_relay(relay_server):
    settings = _settings(str(relay_server.make_url("")))
    a = Peer(settings, "a")
    b = Peer(settings, "b")

    await a.call.start_call()
    await b.call.start_call()

    # a offers on b's request, then b offers its own tracks once stable
    def settled() -> bool:
        return (
            a.session.signaling_state == SignalingState.STABLE
            and b.session.signaling_state == SignalingState.STABLE
            and a.session.remote_description is not None
            and a.session.remote_description.type == "offer"
            and b.session.remote_description is not None
            and b.session.remote_description.type == "answer"
        )

    await _wait_for(settled)
    assert a.session.calls.count("create_offer") == 1
    assert b.session.calls.count("create_offer") == 1
    assert len(a.session.tracks) == 2
    assert set(a.presenter.local.tracks) == {"audio", "video"}

    await a.call.hangup_call()
    await b.call.hangup_call()
    assert a.media.stopped and b.media.stopped
    assert a.session.closed and b.session.closed


@pytest.mark.asyncio
async def test_start_call_while_active_is_noop(relay_server):
    peer = Peer(_settings(str(relay_server.make_url(""))), "a")
    await peer.call.start_call()
    coordinator = peer.call.coordinator
    await peer.call.start_call()
    assert peer.acquired == 1
    assert peer.call.coordinator is coordinator
    await peer.call.hangup_call()


@pytest.mark.asyncio
async def test_hangup_without_call_clears_presentation():
    peer = Peer(_settings("ws://127.0.0.1:1"), "a")
    await peer.call.hangup_call()
    await peer.call.hangup_call()
    assert not peer.call.active
    assert peer.presenter.local.clears == 2
    assert peer.presenter.remote.clears == 2
    assert not peer.session.calls


@pytest.mark.asyncio
async def test_hangup_twice_tears_down_once(relay_server):
    peer = Peer(_settings(str(relay_server.make_url(""))), "a")
    await peer.call.start_call()
    await peer.call.hangup_call()
    await peer.call.hangup_call()
    assert not peer.call.active
    assert peer.session.calls.count("close") == 1
    assert peer.presenter.local.tracks == {}


@pytest.mark.asyncio
async def test_media_failure_creates_nothing():
    created: list[FakeMediaSession] = []

    async def broken_media():
        raise MediaAcquisitionError("no camera")

    def session_factory():
        created.append(FakeMediaSession())
        return created[-1]

    call = Call(
        _settings("ws://127.0.0.1:1"),
        "room42",
        FakePresenter(),
        media_factory=broken_media,
        session_factory=session_factory,
    )
    with pytest.raises(MediaAcquisitionError):
        await call.start_call()
    assert not call.active
    assert created == []


@pytest.mark.asyncio
async def test_unreachable_relay_releases_media_and_session():
    peer = Peer(_settings(f"ws://127.0.0.1:{unused_port()}"), "a")
    with pytest.raises(SignalingError):
        await peer.call.start_call()
    assert not peer.call.active
    assert peer.media.stopped
    assert peer.session.closed


def test_empty_session_id_rejected():
    with pytest.raises(ValueError):
        Call(_settings("ws://127.0.0.1:1"), "", FakePresenter())


class BlockingSink(FakeSink):
    """Sink whose attach waits until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def attach(self, track) -> None:
        self.entered.set()
        await self.release.wait()
        await super().attach(track)


@pytest.mark.asyncio
async def test_hangup_while_acquiring_media_cancels_start():
    entered = asyncio.Event()
    release = asyncio.Event()
    created: list[FakeMediaSession] = []

    async def slow_media():
        entered.set()
        await release.wait()
        return FakeLocalMedia()

    def session_factory():
        created.append(FakeMediaSession())
        return created[-1]

    call = Call(
        _settings("ws://127.0.0.1:1"),
        "room42",
        FakePresenter(),
        media_factory=slow_media,
        session_factory=session_factory,
    )
    start = asyncio.create_task(call.start_call())
    await entered.wait()
    await call.hangup_call()
    release.set()
    await start

    assert not call.active
    assert not call.starting
    assert created == []


@pytest.mark.asyncio
async def test_hangup_after_connect_but_before_join_tears_down(relay_server):
    peer = Peer(_settings(str(relay_server.make_url(""))), "a")
    sink = BlockingSink()
    peer.presenter.local = sink

    start = asyncio.create_task(peer.call.start_call())
    await sink.entered.wait()
    await peer.call.hangup_call()
    await start

    assert not peer.call.active
    assert peer.session.closed
    assert peer.media.stopped
    assert peer.session.tracks == []


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_call(relay_server):
    created: list[FakeMediaSession] = []
    media = FakeLocalMedia()

    async def media_factory():
        return media

    def session_factory():
        created.append(FakeMediaSession())
        return created[-1]

    call = Call(
        _settings(str(relay_server.make_url(""))),
        "room42",
        FakePresenter(),
        media_factory=media_factory,
        session_factory=session_factory,
    )
    await asyncio.gather(call.start_call(), call.start_call())
    assert call.active
    assert len(created) == 1

    await call.hangup_call()
    assert all(session.closed for session in created)


@pytest.mark.asyncio
async def test_session_factory_failure_releases_media():
    media = FakeLocalMedia()

    async def media_factory():
        return media

    def broken_session():
        raise RuntimeError("no peer connection")

    call = Call(
        _settings("ws://127.0.0.1:1"),
        "room42",
        FakePresenter(),
        media_factory=media_factory,
        session_factory=broken_session,
    )
    with pytest.raises(RuntimeError, match="no peer connection"):
        await call.start_call()
    assert media.stopped
    assert not call.active
    assert not call.starting
