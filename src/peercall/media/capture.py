"""Local media acquisition (camera/microphone or synthetic tracks)."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from av.error import FFmpegError

logger = logging.getLogger(__name__)


class MediaAcquisitionError(Exception):
    """Local capture devices could not be opened."""


@dataclasses.dataclass
class LocalMedia:
    """Captured local tracks, fanned out to the peer connection and the preview."""

    tracks: list[MediaStreamTrack]
    player: MediaPlayer | None = None
    relay: MediaRelay = dataclasses.field(default_factory=MediaRelay)

    def outbound_tracks(self) -> list[MediaStreamTrack]:
        return [self.relay.subscribe(track) for track in self.tracks]

    def preview_tracks(self) -> list[MediaStreamTrack]:
        return [self.relay.subscribe(track) for track in self.tracks]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        logger.info("Local media stopped")


async def acquire_local_media(
    source: str = "",
    *,
    media_format: str | None = None,
    options: dict[str, Any] | None = None,
) -> LocalMedia:
    """Open *source* with FFmpeg, or generate test tones when it is empty."""
    if not source:
        logger.info("Using synthetic audio/video tracks")
        return LocalMedia(tracks=[AudioStreamTrack(), VideoStreamTrack()])

    try:
        player = MediaPlayer(source, format=media_format, options=options or {})
    except (FFmpegError, OSError) as exc:
        raise MediaAcquisitionError(f"cannot open {source!r}: {exc}") from exc

    tracks = [t for t in (player.audio, player.video) if t is not None]
    if not tracks:
        raise MediaAcquisitionError(f"{source!r} has no audio or video stream")
    logger.info("Capturing %s from %s", "+".join(t.kind for t in tracks), source)
    return LocalMedia(tracks=tracks, player=player)
