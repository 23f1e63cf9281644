"""Negotiation coordinator: serializes events and performs effects."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from peercall.media.session import MediaSession, SignalingState
from peercall.negotiation.machine import (
    ApplyAnswer,
    ApplyCandidate,
    ApplyRemoteOffer,
    ConnectionStateChanged,
    CreateOffer,
    Effect,
    EnvelopeReceived,
    Event,
    Hangup,
    Joined,
    LocalCandidate,
    NegotiationNeeded,
    RemoteDescriptionApplied,
    ReportConnectionState,
    ScheduleStableCheck,
    SendAnswer,
    SendEnvelope,
    ShowRemoteTrack,
    SignalingLost,
    SignalingStateChanged,
    StableCheck,
    Teardown,
    TrackReceived,
    transition,
)
from peercall.negotiation.state import SessionState
from peercall.presentation import Presenter
from peercall.signaling.envelope import (
    Answer,
    Envelope,
    IceCandidate,
    Offer,
)

logger = logging.getLogger(__name__)

SendFunc = Callable[[Envelope], Awaitable[None]]


class NegotiationCoordinator:
    """Drives one media session through offer/answer negotiation.

    Adapter callbacks and incoming envelopes are queued and handled one at
    a time by a single worker task.  Effects that produce follow-up events
    (a remote description being applied) dispatch them before the next
    queued event.
    """

    def __init__(
        self,
        session_id: str,
        media_session: MediaSession,
        send: SendFunc,
        presenter: Presenter,
        *,
        polite: bool = True,
        peer_ready: bool = False,
    ) -> None:
        self._state = SessionState(
            session_id=session_id,
            media_session=media_session,
            signaling_state=media_session.signaling_state,
            polite=polite,
            peer_ready=peer_ready,
        )
        self._send = send
        self._presenter = presenter
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._effects: dict[type, Callable[[Any], Awaitable[list[Event]]]] = {
            SendEnvelope: self._send_envelope,
            CreateOffer: self._create_offer,
            ApplyRemoteOffer: self._apply_remote_offer,
            SendAnswer: self._send_answer,
            ApplyAnswer: self._apply_answer,
            ApplyCandidate: self._apply_candidate,
            ShowRemoteTrack: self._show_remote_track,
            ReportConnectionState: self._report_connection_state,
            ScheduleStableCheck: self._schedule_stable_check,
            Teardown: self._teardown,
        }
        media_session.attach(self)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state.closed

    def start(self) -> None:
        if self._worker is None and not self.closed:
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def join(self) -> None:
        """Announce readiness to the peer (sends an OfferRequest)."""
        self._enqueue(Joined())

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    # -- MediaSessionListener ------------------------------------------------

    def on_negotiation_needed(self) -> None:
        self._enqueue(NegotiationNeeded())

    def on_ice_candidate(self, candidate: IceCandidate | None) -> None:
        self._enqueue(LocalCandidate(candidate))

    def on_signaling_state_change(self, state: SignalingState) -> None:
        logger.info("[%s] signaling state -> %s", self._state.session_id, state)
        self._enqueue(SignalingStateChanged(state))

    def on_connection_state_change(self, state: str) -> None:
        logger.info("[%s] connection state -> %s", self._state.session_id, state)
        self._enqueue(ConnectionStateChanged(state))

    def on_track(self, track: Any) -> None:
        self._enqueue(TrackReceived(track))

    # -- Signaling channel callbacks ----------------------------------------

    def handle_envelope(self, envelope: Envelope) -> None:
        logger.debug("[%s] received %s", self._state.session_id, envelope.kind.name)
        self._enqueue(EnvelopeReceived(envelope))

    def signaling_lost(self) -> None:
        self._enqueue(SignalingLost())

    # -- Teardown ------------------------------------------------------------

    async def hangup(self) -> None:
        """Tear down the call.  Safe to call in any state, any number of times."""
        if self.closed:
            return
        media_session = self._state.media_session
        if media_session is not None:
            media_session.detach()
        self._state, effects = transition(self._state, Hangup())

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._drain_queue()

        for effect in effects:
            await self._perform(effect)
        logger.info("[%s] call torn down", self._state.session_id)

    # -- Internals -----------------------------------------------------------

    def _enqueue(self, event: Event) -> None:
        if self.closed:
            logger.debug("Dropping %s after teardown", type(event).__name__)
            return
        self._queue.put_nowait(event)

    def _drain_queue(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception(
                    "Unhandled error processing %s (signaling=%s)",
                    type(event).__name__,
                    self._state.signaling_state,
                )
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        if self.closed:
            return
        media_session = self._state.media_session
        if media_session is not None:
            self._state = dataclasses.replace(
                self._state, signaling_state=media_session.signaling_state
            )
        self._state, effects = transition(self._state, event)
        for effect in effects:
            if self.closed:
                return
            for follow_up in await self._perform(effect):
                await self._dispatch(follow_up)

    async def _perform(self, effect: Effect) -> list[Event]:
        try:
            return await self._effects[type(effect)](effect)
        except Exception as exc:
            logger.warning(
                "[%s] %s failed (signaling=%s): %s",
                self._state.session_id,
                type(effect).__name__,
                self._current_signaling_state(),
                exc,
            )
            return []

    def _current_signaling_state(self) -> SignalingState:
        media_session = self._state.media_session
        if media_session is None:
            return self._state.signaling_state
        return media_session.signaling_state

    def _session(self) -> MediaSession:
        media_session = self._state.media_session
        if media_session is None:
            raise RuntimeError("media session already closed")
        return media_session

    async def _send_envelope(self, effect: SendEnvelope) -> list[Event]:
        await self._send(effect.envelope)
        logger.debug("[%s] sent %s", self._state.session_id, effect.envelope.kind.name)
        return []

    async def _create_offer(self, effect: CreateOffer) -> list[Event]:
        session = self._session()
        offer = await session.create_offer()
        if self.closed:
            return []
        await session.set_local_description(offer)
        if self.closed:
            return []
        await self._send(Offer(session.local_description or offer))
        logger.info("[%s] sent offer", self._state.session_id)
        return []

    async def _apply_remote_offer(self, effect: ApplyRemoteOffer) -> list[Event]:
        session = self._session()
        if session.signaling_state == SignalingState.HAVE_LOCAL_OFFER:
            await session.rollback()
        await session.set_remote_description(effect.description)
        return [RemoteDescriptionApplied()]

    async def _send_answer(self, effect: SendAnswer) -> list[Event]:
        session = self._session()
        if session.signaling_state != SignalingState.HAVE_REMOTE_OFFER:
            logger.warning(
                "[%s] Skipping answer, remote offer not applied (signaling=%s)",
                self._state.session_id,
                session.signaling_state,
            )
            return []
        answer = await session.create_answer()
        if self.closed:
            return []
        await session.set_local_description(answer)
        if self.closed:
            return []
        await self._send(Answer(session.local_description or answer))
        logger.info("[%s] sent answer", self._state.session_id)
        return []

    async def _apply_answer(self, effect: ApplyAnswer) -> list[Event]:
        await self._session().set_remote_description(effect.description)
        logger.info("[%s] answer applied", self._state.session_id)
        return [RemoteDescriptionApplied()]

    async def _apply_candidate(self, effect: ApplyCandidate) -> list[Event]:
        await self._session().add_candidate(effect.candidate)
        return []

    async def _show_remote_track(self, effect: ShowRemoteTrack) -> list[Event]:
        await self._presenter.remote.attach(effect.track)
        return []

    async def _report_connection_state(
        self, effect: ReportConnectionState
    ) -> list[Event]:
        self._presenter.connection_state_changed(effect.state)
        return []

    async def _schedule_stable_check(self, effect: ScheduleStableCheck) -> list[Event]:
        self._enqueue(StableCheck())
        return []

    async def _teardown(self, effect: Teardown) -> list[Event]:
        try:
            if effect.media_session is not None:
                await effect.media_session.close()
        finally:
            await self._presenter.local.clear()
            await self._presenter.remote.clear()
        return []
