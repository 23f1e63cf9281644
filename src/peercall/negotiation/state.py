"""Per-call negotiation state."""

from __future__ import annotations

import dataclasses

from peercall.media.session import MediaSession, SignalingState
from peercall.signaling.envelope import IceCandidate


@dataclasses.dataclass(frozen=True)
class SessionState:
    session_id: str
    media_session: MediaSession | None = dataclasses.field(
        default=None, compare=False, repr=False
    )
    signaling_state: SignalingState = SignalingState.STABLE
    renegotiation_pending: bool = False
    peer_ready: bool = False
    polite: bool = True
    remote_description_set: bool = False
    pending_candidates: tuple[IceCandidate, ...] = ()
    closed: bool = False
