"""Call controller: the start/hangup surface used by the presentation layer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from peercall.config import Settings
from peercall.media.capture import LocalMedia, acquire_local_media
from peercall.media.session import MediaSession, create_media_session
from peercall.negotiation.coordinator import NegotiationCoordinator
from peercall.presentation import Presenter
from peercall.signaling.channel import SignalingChannel, build_signaling_url, connect
from peercall.signaling.envelope import Envelope

logger = logging.getLogger(__name__)

MediaFactory = Callable[[], Awaitable[Any]]
SessionFactory = Callable[[], MediaSession]


class Call:
    """One two-party call addressed by a session id.

    ``start_call`` and ``hangup_call`` are both no-ops when the call is
    already in the requested condition.  A hangup that arrives while the
    call is still starting cancels the start.
    """

    def __init__(
        self,
        settings: Settings,
        session_id: str,
        presenter: Presenter,
        *,
        media_factory: MediaFactory | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.url = build_signaling_url(settings.signaling_url, session_id)
        self.session_id = session_id
        self._settings = settings
        self._presenter = presenter
        self._media_factory = media_factory or self._acquire_media
        self._session_factory = session_factory or self._create_session
        self._local_media: LocalMedia | None = None
        self._channel: SignalingChannel | None = None
        self._coordinator: NegotiationCoordinator | None = None
        self._start_task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._coordinator is not None

    @property
    def starting(self) -> bool:
        return self._start_task is not None

    @property
    def coordinator(self) -> NegotiationCoordinator | None:
        return self._coordinator

    async def start_call(self) -> None:
        """Acquire media, connect to the relay and begin negotiating.

        Raises ``MediaAcquisitionError`` before anything else is created, and
        ``SignalingError`` after releasing media if the relay is unreachable.
        Returns quietly if ``hangup_call`` cancels the start.
        """
        if self.active or self.starting:
            logger.warning("Call %s already active", self.session_id)
            return

        task = asyncio.get_running_loop().create_task(self._start())
        self._start_task = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info("Call %s hung up while starting", self.session_id)
        finally:
            self._start_task = None

    async def hangup_call(self) -> None:
        start_task = self._start_task
        if start_task is not None and not start_task.done():
            start_task.cancel()
            await asyncio.wait([start_task])

        coordinator, self._coordinator = self._coordinator, None
        local_media, self._local_media = self._local_media, None
        channel, self._channel = self._channel, None

        if coordinator is not None:
            await coordinator.hangup()
        if local_media is not None:
            local_media.stop()
        if channel is not None:
            await channel.close()
        await self._presenter.local.clear()
        await self._presenter.remote.clear()
        if coordinator is not None:
            logger.info("Call %s ended", self.session_id)

    async def _start(self) -> None:
        local_media = await self._media_factory()
        media_session: MediaSession | None = None
        coordinator: NegotiationCoordinator | None = None
        try:
            media_session = self._session_factory()
            coordinator = NegotiationCoordinator(
                self.session_id,
                media_session,
                self._send,
                self._presenter,
                polite=self._settings.polite,
            )
            channel = await connect(
                self.url,
                on_message=coordinator.handle_envelope,
                on_close=coordinator.signaling_lost,
            )
        except BaseException:
            if coordinator is not None:
                await coordinator.hangup()
            elif media_session is not None:
                await media_session.close()
            local_media.stop()
            raise

        # From here on hangup_call owns the teardown
        self._local_media = local_media
        self._channel = channel
        self._coordinator = coordinator
        coordinator.start()

        for track in local_media.preview_tracks():
            await self._presenter.local.attach(track)
        for track in local_media.outbound_tracks():
            media_session.add_track(track)
        coordinator.join()
        logger.info("Call %s started", self.session_id)

    async def _send(self, envelope: Envelope) -> None:
        if self._channel is None:
            raise RuntimeError("call has no signaling channel")
        await self._channel.send(envelope)

    async def _acquire_media(self) -> LocalMedia:
        return await acquire_local_media(
            self._settings.media_source, media_format=self._settings.media_format
        )

    def _create_session(self) -> MediaSession:
        return create_media_session(self._settings.stun_servers)
