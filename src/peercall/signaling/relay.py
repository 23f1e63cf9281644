"""Two-party WebSocket relay, aiohttp-based.

Each session id names a room of at most two participants.  Text frames
from one participant are forwarded verbatim to the other; frames sent
while alone are dropped.
"""

from __future__ import annotations

import logging

from aiohttp import WSMsgType, web

from peercall.signaling.channel import HEARTBEAT, MAX_MESSAGE_SIZE

logger = logging.getLogger(__name__)

MAX_PARTICIPANTS = 2

_rooms_key = web.AppKey("rooms", dict)


async def _forward(
    room: list[web.WebSocketResponse], sender: web.WebSocketResponse, data: str
) -> int:
    delivered = 0
    for peer in room:
        if peer is sender or not peer.prepared or peer.closed:
            continue
        await peer.send_str(data)
        delivered += 1
    return delivered


async def _ws_handler(request: web.Request) -> web.StreamResponse:
    session_id = request.match_info["session_id"]
    rooms: dict[str, list[web.WebSocketResponse]] = request.app[_rooms_key]
    room = rooms.setdefault(session_id, [])
    if len(room) >= MAX_PARTICIPANTS:
        logger.warning("Session %s is full, rejecting %s", session_id, request.remote)
        raise web.HTTPConflict(text="Session is full")

    # Claim the slot before the handshake so concurrent joins cannot overfill
    ws = web.WebSocketResponse(heartbeat=HEARTBEAT, max_msg_size=MAX_MESSAGE_SIZE)
    room.append(ws)
    try:
        await ws.prepare(request)
        logger.info(
            "Participant joined session %s (%d/%d)",
            session_id,
            len(room),
            MAX_PARTICIPANTS,
        )
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                if not await _forward(room, ws, msg.data):
                    logger.debug("No peer in session %s, dropping frame", session_id)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(
                    "Session %s connection error: %s", session_id, ws.exception()
                )
    finally:
        room.remove(ws)
        if not room:
            rooms.pop(session_id, None)
        logger.info("Participant left session %s", session_id)
    return ws


async def _close_all(app: web.Application) -> None:
    for room in list(app[_rooms_key].values()):
        for ws in list(room):
            if ws.prepared:
                await ws.close(code=1001, message=b"Server shutdown")


def create_app() -> web.Application:
    app = web.Application()
    app[_rooms_key] = {}
    app.router.add_get("/ws/{session_id}", _ws_handler)
    app.on_shutdown.append(_close_all)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Relay listening on %s:%d", host, port)
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
