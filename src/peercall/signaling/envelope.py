"""Signaling envelopes and their JSON wire codec.

Wire shape: ``{"type": <int>, "data": <payload>}``.  The numeric kinds are
fixed for interop with unmodified peers and relays:

    1 = CandidateExchange, 2 = Offer, 3 = Answer, 4 = OfferRequest
"""

from __future__ import annotations

import dataclasses
import json
from enum import IntEnum
from typing import Any, ClassVar, Literal


class EnvelopeKind(IntEnum):
    CANDIDATE_EXCHANGE = 1
    OFFER = 2
    ANSWER = 3
    OFFER_REQUEST = 4


class EnvelopeError(ValueError):
    """Raised when a frame is not a well-formed envelope."""


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Session description as exchanged in Offer/Answer envelopes."""

    type: Literal["offer", "answer"]
    sdp: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Any) -> SessionDescription:
        if not isinstance(data, dict):
            raise EnvelopeError(f"description must be an object, got {data!r}")
        desc_type = data.get("type")
        sdp = data.get("sdp")
        if desc_type not in ("offer", "answer"):
            raise EnvelopeError(f"unsupported description type {desc_type!r}")
        if not isinstance(sdp, str):
            raise EnvelopeError("description sdp must be a string")
        return cls(type=desc_type, sdp=sdp)


@dataclasses.dataclass(frozen=True)
class IceCandidate:
    """Transport candidate in RTCIceCandidateInit JSON form."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None
    username_fragment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }
        if self.username_fragment is not None:
            data["usernameFragment"] = self.username_fragment
        return data

    @classmethod
    def from_dict(cls, data: Any) -> IceCandidate:
        if not isinstance(data, dict):
            raise EnvelopeError(f"candidate must be an object, got {data!r}")
        candidate = data.get("candidate")
        if not isinstance(candidate, str):
            raise EnvelopeError("candidate string missing")
        sdp_mid = data.get("sdpMid")
        index = data.get("sdpMLineIndex")
        ufrag = data.get("usernameFragment")
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            raise EnvelopeError("sdpMid must be a string")
        # bool is an int subclass; reject it explicitly
        if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
            raise EnvelopeError("sdpMLineIndex must be an integer")
        if ufrag is not None and not isinstance(ufrag, str):
            raise EnvelopeError("usernameFragment must be a string")
        return cls(
            candidate=candidate,
            sdp_mid=sdp_mid,
            sdp_mline_index=index,
            username_fragment=ufrag,
        )


@dataclasses.dataclass(frozen=True)
class CandidateExchange:
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.CANDIDATE_EXCHANGE
    candidate: IceCandidate


@dataclasses.dataclass(frozen=True)
class Offer:
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.OFFER
    description: SessionDescription

    def __post_init__(self) -> None:
        if self.description.type != "offer":
            raise EnvelopeError("Offer envelope must carry an offer description")


@dataclasses.dataclass(frozen=True)
class Answer:
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.ANSWER
    description: SessionDescription

    def __post_init__(self) -> None:
        if self.description.type != "answer":
            raise EnvelopeError("Answer envelope must carry an answer description")


@dataclasses.dataclass(frozen=True)
class OfferRequest:
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.OFFER_REQUEST


Envelope = CandidateExchange | Offer | Answer | OfferRequest


def envelope_to_wire(envelope: Envelope) -> dict[str, Any]:
    """Return the JSON-compatible wire structure for *envelope*."""
    data: Any
    if isinstance(envelope, CandidateExchange):
        data = envelope.candidate.to_dict()
    elif isinstance(envelope, (Offer, Answer)):
        data = envelope.description.to_dict()
    else:
        data = None
    return {"type": int(envelope.kind), "data": data}


def envelope_from_wire(message: Any) -> Envelope:
    """Build an envelope from a decoded wire structure."""
    if not isinstance(message, dict):
        raise EnvelopeError(f"envelope must be an object, got {message!r}")
    raw_kind = message.get("type")
    if isinstance(raw_kind, bool) or not isinstance(raw_kind, int):
        raise EnvelopeError(f"envelope type must be an integer, got {raw_kind!r}")
    try:
        kind = EnvelopeKind(raw_kind)
    except ValueError:
        raise EnvelopeError(f"unknown envelope type {raw_kind}") from None

    data = message.get("data")
    if kind is EnvelopeKind.CANDIDATE_EXCHANGE:
        return CandidateExchange(IceCandidate.from_dict(data))
    if kind is EnvelopeKind.OFFER:
        return Offer(SessionDescription.from_dict(data))
    if kind is EnvelopeKind.ANSWER:
        return Answer(SessionDescription.from_dict(data))
    if data not in (None, {}):
        raise EnvelopeError("OfferRequest carries no payload")
    return OfferRequest()


def encode_envelope(envelope: Envelope) -> str:
    """Serialize *envelope* to a JSON text frame."""
    return json.dumps(envelope_to_wire(envelope), separators=(",", ":"))


def decode_envelope(text: str | bytes) -> Envelope:
    """Parse a JSON text frame into an envelope."""
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise EnvelopeError(f"invalid JSON: {exc}") from exc
    return envelope_from_wire(message)
