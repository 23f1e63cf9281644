"""WebSocket signaling channel to the relay server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from urllib.parse import quote

import aiohttp

from peercall.signaling.envelope import (
    Envelope,
    EnvelopeError,
    decode_envelope,
    encode_envelope,
)

logger = logging.getLogger(__name__)

HEARTBEAT = 54.0  # seconds between pings
MAX_MESSAGE_SIZE = 64 * 1024


class SignalingError(Exception):
    """The signaling channel could not be opened or is no longer usable."""


def build_signaling_url(base_url: str, session_id: str) -> str:
    """Return the relay endpoint for *session_id*."""
    if not session_id:
        raise ValueError("session id must not be empty")
    return f"{base_url.rstrip('/')}/ws/{quote(session_id, safe='')}"


class SignalingChannel:
    """Duplex envelope channel over one WebSocket connection.

    ``on_message`` is called for every well-formed envelope in arrival
    order.  ``on_close`` fires once when the connection ends without
    ``close()`` having been called.
    """

    def __init__(
        self,
        url: str,
        *,
        on_message: Callable[[Envelope], None],
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.url = url
        self._on_message = on_message
        self._on_close = on_close
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.url, heartbeat=HEARTBEAT, max_msg_size=MAX_MESSAGE_SIZE
            )
        except aiohttp.ClientError as exc:
            await self._session.close()
            self._session = None
            raise SignalingError(f"cannot connect to {self.url}: {exc}") from exc
        except asyncio.CancelledError:
            await self._session.close()
            self._session = None
            raise
        logger.info("Signaling connected to %s", self.url)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def send(self, envelope: Envelope) -> None:
        if self._ws is None or self._ws.closed:
            raise SignalingError("signaling channel is closed")
        await self._ws.send_str(encode_envelope(envelope))

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await self._reader
            self._reader = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        envelope = decode_envelope(msg.data)
                    except EnvelopeError as exc:
                        logger.warning("Dropping malformed envelope: %s", exc)
                        continue
                    self._on_message(envelope)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Signaling error: %s", self._ws.exception())
                    break
        finally:
            if not self._closing:
                logger.warning("Signaling connection to %s lost", self.url)
                if self._on_close is not None:
                    self._on_close()


async def connect(
    url: str,
    *,
    on_message: Callable[[Envelope], None],
    on_close: Callable[[], None] | None = None,
) -> SignalingChannel:
    """Open a signaling channel to *url*."""
    channel = SignalingChannel(url, on_message=on_message, on_close=on_close)
    await channel.connect()
    return channel
