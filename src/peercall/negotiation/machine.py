"""Offer/answer negotiation state machine.

``transition(state, event)`` is pure: it returns the next ``SessionState`` and
the effects the coordinator must perform, in order.  It never touches the
media session or the signaling channel itself.

Offer emission points:
- a stable transition (or scheduled stable check) that observes
  ``renegotiation_pending`` while the peer is ready
- an ``OfferRequest`` received while stable

Glare: a remote Offer arriving in have-local-offer is accepted after a
rollback by the polite peer and ignored by the impolite one.  The rolled-back
local change stays pending and is offered again once stable.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from typing import Any

from peercall.media.session import MediaSession, SignalingState
from peercall.negotiation.state import SessionState
from peercall.signaling.envelope import (
    Answer,
    CandidateExchange,
    Envelope,
    IceCandidate,
    Offer,
    OfferRequest,
    SessionDescription,
)

logger = logging.getLogger(__name__)

SIGNALING_LOST = "signaling-lost"


# -- Events ------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class NegotiationNeeded:
    pass


@dataclasses.dataclass(frozen=True)
class StableCheck:
    pass


@dataclasses.dataclass(frozen=True)
class SignalingStateChanged:
    state: SignalingState


@dataclasses.dataclass(frozen=True)
class ConnectionStateChanged:
    state: str


@dataclasses.dataclass(frozen=True)
class LocalCandidate:
    candidate: IceCandidate | None


@dataclasses.dataclass(frozen=True)
class TrackReceived:
    track: Any


@dataclasses.dataclass(frozen=True)
class EnvelopeReceived:
    envelope: Envelope


@dataclasses.dataclass(frozen=True)
class RemoteDescriptionApplied:
    pass


@dataclasses.dataclass(frozen=True)
class Joined:
    pass


@dataclasses.dataclass(frozen=True)
class SignalingLost:
    pass


@dataclasses.dataclass(frozen=True)
class Hangup:
    pass


Event = (
    NegotiationNeeded
    | StableCheck
    | SignalingStateChanged
    | ConnectionStateChanged
    | LocalCandidate
    | TrackReceived
    | EnvelopeReceived
    | RemoteDescriptionApplied
    | Joined
    | SignalingLost
    | Hangup
)


# -- Effects -----------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class SendEnvelope:
    envelope: Envelope


@dataclasses.dataclass(frozen=True)
class CreateOffer:
    """Create an offer, set it as local description and send it."""


@dataclasses.dataclass(frozen=True)
class ApplyRemoteOffer:
    description: SessionDescription
    rollback: bool = False


@dataclasses.dataclass(frozen=True)
class SendAnswer:
    """Create an answer, set it as local description and send it."""


@dataclasses.dataclass(frozen=True)
class ApplyAnswer:
    description: SessionDescription


@dataclasses.dataclass(frozen=True)
class ApplyCandidate:
    candidate: IceCandidate


@dataclasses.dataclass(frozen=True)
class ShowRemoteTrack:
    track: Any


@dataclasses.dataclass(frozen=True)
class ReportConnectionState:
    state: str


@dataclasses.dataclass(frozen=True)
class ScheduleStableCheck:
    pass


@dataclasses.dataclass(frozen=True)
class Teardown:
    media_session: MediaSession | None = dataclasses.field(compare=False)


Effect = (
    SendEnvelope
    | CreateOffer
    | ApplyRemoteOffer
    | SendAnswer
    | ApplyAnswer
    | ApplyCandidate
    | ShowRemoteTrack
    | ReportConnectionState
    | ScheduleStableCheck
    | Teardown
)

Transition = tuple[SessionState, list[Effect]]


def _maybe_offer(state: SessionState) -> Transition:
    if (
        state.renegotiation_pending
        and state.peer_ready
        and state.signaling_state == SignalingState.STABLE
    ):
        return dataclasses.replace(state, renegotiation_pending=False), [CreateOffer()]
    return state, []


def _on_negotiation_needed(state: SessionState, event: NegotiationNeeded) -> Transition:
    state = dataclasses.replace(state, renegotiation_pending=True)
    if state.signaling_state == SignalingState.STABLE and state.peer_ready:
        # Offer from the back of the queue so an already-queued remote offer wins
        return state, [ScheduleStableCheck()]
    logger.debug(
        "Renegotiation deferred (signaling=%s, peer_ready=%s)",
        state.signaling_state,
        state.peer_ready,
    )
    return state, []


def _on_stable_check(state: SessionState, event: StableCheck) -> Transition:
    return _maybe_offer(state)


def _on_signaling_state_changed(
    state: SessionState, event: SignalingStateChanged
) -> Transition:
    if event.state != SignalingState.STABLE:
        return state, []
    return _maybe_offer(state)


def _on_connection_state_changed(
    state: SessionState, event: ConnectionStateChanged
) -> Transition:
    return state, [ReportConnectionState(event.state)]


def _on_local_candidate(state: SessionState, event: LocalCandidate) -> Transition:
    if event.candidate is None:
        logger.debug("Local candidate gathering complete")
        return state, []
    return state, [SendEnvelope(CandidateExchange(event.candidate))]


def _on_track_received(state: SessionState, event: TrackReceived) -> Transition:
    return state, [ShowRemoteTrack(event.track)]


def _on_remote_description_applied(
    state: SessionState, event: RemoteDescriptionApplied
) -> Transition:
    buffered = state.pending_candidates
    if buffered:
        logger.debug("Flushing %d buffered candidate(s)", len(buffered))
    state = dataclasses.replace(
        state, remote_description_set=True, pending_candidates=()
    )
    return state, [ApplyCandidate(c) for c in buffered]


def _on_joined(state: SessionState, event: Joined) -> Transition:
    return state, [SendEnvelope(OfferRequest())]


def _on_signaling_lost(state: SessionState, event: SignalingLost) -> Transition:
    return state, [ReportConnectionState(SIGNALING_LOST)]


def _on_hangup(state: SessionState, event: Hangup) -> Transition:
    media_session = state.media_session
    state = dataclasses.replace(
        state,
        media_session=None,
        signaling_state=SignalingState.CLOSED,
        renegotiation_pending=False,
        pending_candidates=(),
        closed=True,
    )
    return state, [Teardown(media_session)]


# -- Remote envelopes --------------------------------------------------------


def _on_remote_offer(state: SessionState, envelope: Offer) -> Transition:
    if state.signaling_state == SignalingState.CLOSED:
        return state, []
    if state.signaling_state == SignalingState.HAVE_LOCAL_OFFER:
        if not state.polite:
            logger.info("Ignoring colliding remote offer (impolite peer)")
            return state, []
        logger.info("Offer collision, rolling back local offer")
        state = dataclasses.replace(state, renegotiation_pending=True)
        return state, [
            ApplyRemoteOffer(envelope.description, rollback=True),
            SendAnswer(),
        ]
    return state, [ApplyRemoteOffer(envelope.description), SendAnswer()]


def _on_remote_answer(state: SessionState, envelope: Answer) -> Transition:
    if state.signaling_state != SignalingState.HAVE_LOCAL_OFFER:
        logger.warning(
            "Ignoring stale answer (signaling=%s)", state.signaling_state
        )
        return state, []
    return state, [ApplyAnswer(envelope.description)]


def _on_remote_candidate(state: SessionState, envelope: CandidateExchange) -> Transition:
    if state.remote_description_set:
        return state, [ApplyCandidate(envelope.candidate)]
    state = dataclasses.replace(
        state, pending_candidates=(*state.pending_candidates, envelope.candidate)
    )
    return state, []


def _on_offer_request(state: SessionState, envelope: OfferRequest) -> Transition:
    if state.signaling_state == SignalingState.STABLE:
        return dataclasses.replace(state, renegotiation_pending=False), [CreateOffer()]
    return dataclasses.replace(state, renegotiation_pending=True), []


_ENVELOPE_HANDLERS: dict[type, Callable[[SessionState, Any], Transition]] = {
    Offer: _on_remote_offer,
    Answer: _on_remote_answer,
    CandidateExchange: _on_remote_candidate,
    OfferRequest: _on_offer_request,
}


def _on_envelope_received(state: SessionState, event: EnvelopeReceived) -> Transition:
    # Anything from the peer proves it is listening
    state = dataclasses.replace(state, peer_ready=True)
    handler = _ENVELOPE_HANDLERS[type(event.envelope)]
    return handler(state, event.envelope)


_HANDLERS: dict[type, Callable[[SessionState, Any], Transition]] = {
    NegotiationNeeded: _on_negotiation_needed,
    StableCheck: _on_stable_check,
    SignalingStateChanged: _on_signaling_state_changed,
    ConnectionStateChanged: _on_connection_state_changed,
    LocalCandidate: _on_local_candidate,
    TrackReceived: _on_track_received,
    EnvelopeReceived: _on_envelope_received,
    RemoteDescriptionApplied: _on_remote_description_applied,
    Joined: _on_joined,
    SignalingLost: _on_signaling_lost,
    Hangup: _on_hangup,
}


def transition(state: SessionState, event: Event) -> Transition:
    """Apply *event* to *state*, returning the new state and effects to run."""
    if state.closed:
        return state, []
    return _HANDLERS[type(event)](state, event)
