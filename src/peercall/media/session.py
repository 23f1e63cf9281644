"""Media session adapter: contract plus an aiortc implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from enum import StrEnum
from typing import Any, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from peercall.signaling.envelope import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)


class SignalingState(StrEnum):
    """Signaling states of the underlying peer connection."""

    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"


class InvalidStateError(Exception):
    """Operation not valid in the session's current signaling state."""


class MediaSessionListener(Protocol):
    def on_negotiation_needed(self) -> None: ...

    def on_ice_candidate(self, candidate: IceCandidate | None) -> None: ...

    def on_signaling_state_change(self, state: SignalingState) -> None: ...

    def on_connection_state_change(self, state: str) -> None: ...

    def on_track(self, track: Any) -> None: ...


class MediaSession(Protocol):
    """Operations the negotiation coordinator drives."""

    @property
    def signaling_state(self) -> SignalingState: ...

    @property
    def local_description(self) -> SessionDescription | None: ...

    @property
    def remote_description(self) -> SessionDescription | None: ...

    def attach(self, listener: MediaSessionListener) -> None: ...

    def detach(self) -> None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(
        self, description: SessionDescription
    ) -> None: ...

    async def rollback(self) -> None: ...

    async def add_candidate(self, candidate: IceCandidate) -> None: ...

    def add_track(self, track: Any) -> None: ...

    async def close(self) -> None: ...


def _to_description(desc: RTCSessionDescription | None) -> SessionDescription | None:
    if desc is None:
        return None
    return SessionDescription(type=desc.type, sdp=desc.sdp)  # type: ignore[arg-type]


class AiortcMediaSession:
    """MediaSession backed by an aiortc ``RTCPeerConnection``.

    aiortc gathers all local candidates inside ``setLocalDescription`` and
    embeds them in the description, so there is no trickle: the listener
    only ever sees the end-of-candidates marker once gathering completes.
    aiortc also never fires negotiation-needed; ``add_track`` schedules one
    per loop iteration instead.
    """

    def __init__(self, configuration: RTCConfiguration | None = None) -> None:
        self._pc = RTCPeerConnection(configuration=configuration)
        self._listener: MediaSessionListener | None = None
        self._negotiation_scheduled = False
        self._closed = False
        # Transceiver and ICE role state from before the last local offer
        self._pre_offer: list[tuple[Any, str | None, int | None, str | None]] = []
        self._pre_offer_ice: list[Any] = []

        self._pc.on("signalingstatechange", self._on_signaling_state_change)
        self._pc.on("connectionstatechange", self._on_connection_state_change)
        self._pc.on("icegatheringstatechange", self._on_ice_gathering_state_change)
        self._pc.on("track", self._on_track)

    @property
    def signaling_state(self) -> SignalingState:
        return SignalingState(self._pc.signalingState)

    @property
    def local_description(self) -> SessionDescription | None:
        return _to_description(self._pc.localDescription)

    @property
    def remote_description(self) -> SessionDescription | None:
        return _to_description(self._pc.remoteDescription)

    def attach(self, listener: MediaSessionListener) -> None:
        self._listener = listener

    def detach(self) -> None:
        self._listener = None

    async def create_offer(self) -> SessionDescription:
        self._remember_pre_offer_state()
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        if description.type == "answer":
            # aiortc needs an offered direction on every transceiver, including
            # local ones the remote offer has no section for
            for transceiver in self._pc.getTransceivers():
                if transceiver._offerDirection is None:
                    transceiver._offerDirection = "inactive"
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def rollback(self) -> None:
        """Discard an uncommitted local offer and return to stable.

        aiortc does not accept ``rollback`` descriptions, so the pending
        local description is dropped directly and the mids, m-line indexes
        and ICE roles the offer assigned are restored.  Without that, a
        remote offer with differently ordered or fewer sections cannot be
        answered.
        """
        if self._pc.signalingState != SignalingState.HAVE_LOCAL_OFFER:
            return
        self._restore_pre_offer_state()
        self._pc._RTCPeerConnection__pendingLocalDescription = None  # type: ignore[attr-defined]
        self._pc._RTCPeerConnection__setSignalingState("stable")  # type: ignore[attr-defined]
        logger.info("Rolled back local offer")

    def _remember_pre_offer_state(self) -> None:
        self._pre_offer = [
            (t, t.mid, t._get_mline_index(), t._offerDirection)
            for t in self._pc.getTransceivers()
        ]
        ice_transports = self._pc._RTCPeerConnection__iceTransports  # type: ignore[attr-defined]
        self._pre_offer_ice = [t for t in ice_transports if not t._role_set]

    def _restore_pre_offer_state(self) -> None:
        known = set()
        for transceiver, mid, mline_index, offer_direction in self._pre_offer:
            known.add(transceiver)
            transceiver._set_mid(mid)
            transceiver._set_mline_index(mline_index)
            transceiver._offerDirection = offer_direction
        # transceivers added after the offer was created were never negotiated
        for transceiver in self._pc.getTransceivers():
            if transceiver not in known:
                transceiver._set_mid(None)
                transceiver._set_mline_index(None)
        for ice_transport in self._pre_offer_ice:
            ice_transport._role_set = False
            ice_transport._connection.ice_controlling = False
        self._pre_offer = []
        self._pre_offer_ice = []

    async def add_candidate(self, candidate: IceCandidate) -> None:
        if self._pc.remoteDescription is None:
            raise InvalidStateError("no remote description set")
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]
        if not sdp:
            # Empty candidate string marks the end of the remote's candidates
            return
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)
        if not self._negotiation_scheduled:
            self._negotiation_scheduled = True
            asyncio.get_running_loop().call_soon(self._fire_negotiation_needed)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener = None
        await self._pc.close()

    def _fire_negotiation_needed(self) -> None:
        self._negotiation_scheduled = False
        if self._listener is not None and not self._closed:
            self._listener.on_negotiation_needed()

    def _on_signaling_state_change(self) -> None:
        if self._listener is not None:
            self._listener.on_signaling_state_change(self.signaling_state)

    def _on_connection_state_change(self) -> None:
        if self._listener is not None:
            self._listener.on_connection_state_change(self._pc.connectionState)

    def _on_ice_gathering_state_change(self) -> None:
        if self._listener is not None and self._pc.iceGatheringState == "complete":
            self._listener.on_ice_candidate(None)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info("Remote %s track received", track.kind)
        if self._listener is not None:
            self._listener.on_track(track)


def create_media_session(ice_servers: Iterable[str] = ()) -> AiortcMediaSession:
    """Create an aiortc-backed media session using the given STUN/TURN URLs."""
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers]
    )
    return AiortcMediaSession(configuration)
