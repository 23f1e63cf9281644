"""Presentation layer: local/remote media sinks and call status reporting."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

logger = logging.getLogger(__name__)


class MediaSink(Protocol):
    async def attach(self, track: Any) -> None: ...

    async def clear(self) -> None: ...


class Presenter(Protocol):
    local: MediaSink
    remote: MediaSink

    def connection_state_changed(self, state: str) -> None: ...


class TrackSink:
    """Plays tracks into a recorder file, or discards them when no path is set.

    Holds at most one track per kind; attaching a track of a kind already
    present replaces it.
    """

    def __init__(self, name: str, path: str | None = None) -> None:
        self.name = name
        self._path = path
        self._tracks: dict[str, Any] = {}
        self._recorder: MediaRecorder | MediaBlackhole | None = None

    @property
    def tracks(self) -> list[Any]:
        return list(self._tracks.values())

    async def attach(self, track: Any) -> None:
        self._tracks[track.kind] = track
        await self._restart()
        logger.info("%s sink showing %s track", self.name, track.kind)

    async def clear(self) -> None:
        await self._stop_recorder()
        self._tracks.clear()

    async def _restart(self) -> None:
        await self._stop_recorder()
        recorder = MediaRecorder(self._path) if self._path else MediaBlackhole()
        for track in self._tracks.values():
            recorder.addTrack(track)
        await recorder.start()
        self._recorder = recorder

    async def _stop_recorder(self) -> None:
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            await recorder.stop()


class ConsolePresenter:
    """Presenter for the command line: sinks plus logged call status."""

    def __init__(self, record_path: str | None = None) -> None:
        self.local = TrackSink("local")
        self.remote = TrackSink("remote", record_path)
        self.connection_state = "new"

    def connection_state_changed(self, state: str) -> None:
        self.connection_state = state
        if state in ("failed", "signaling-lost"):
            logger.warning("Call connection %s", state)
        else:
            logger.info("Call connection %s", state)
