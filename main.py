"""peercall entrypoint: run the relay or join a call."""

import argparse
import asyncio
import dataclasses
import logging
import signal

from dotenv import load_dotenv

from peercall.call import Call
from peercall.config import Settings, load_settings
from peercall.media.capture import MediaAcquisitionError
from peercall.presentation import ConsolePresenter
from peercall.signaling.channel import SignalingError
from peercall.signaling.relay import create_app, start_webapp, stop_webapp

logger = logging.getLogger(__name__)


async def _wait_for_shutdown() -> None:
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    await shutdown.wait()
    logger.info("Shutting down...")


async def run_relay(settings: Settings) -> None:
    runner = await start_webapp(create_app(), settings.relay_host, settings.relay_port)
    try:
        await _wait_for_shutdown()
    finally:
        await stop_webapp(runner)


async def run_call(settings: Settings, session_id: str) -> int:
    presenter = ConsolePresenter(settings.record_path)
    call = Call(settings, session_id, presenter)
    try:
        await call.start_call()
    except MediaAcquisitionError as exc:
        logger.error("Cannot start call: %s", exc)
        return 1
    except SignalingError as exc:
        logger.error("Cannot reach relay: %s", exc)
        return 1
    try:
        await _wait_for_shutdown()
    finally:
        await call.hangup_call()
    return 0


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="peercall")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("relay", help="serve the two-party signaling relay")
    call = sub.add_parser("call", help="join a call session")
    call.add_argument("session_id")
    call.add_argument("--record", help="record the remote stream to this file")
    call.add_argument(
        "--impolite",
        action="store_true",
        help="ignore colliding remote offers instead of rolling back",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    settings = load_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "relay":
        asyncio.run(run_relay(settings))
        return 0

    if not args.session_id:
        logger.error("Session id must not be empty")
        return 2
    if args.record:
        settings = dataclasses.replace(settings, record_path=args.record)
    if args.impolite:
        settings = dataclasses.replace(settings, polite=False)
    return asyncio.run(run_call(settings, args.session_id))


if __name__ == "__main__":
    raise SystemExit(main())
