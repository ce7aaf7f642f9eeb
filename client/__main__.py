from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from .app import MeetingApp
from .directory_client import DirectoryClient
from .session_state import MeetingSession, SessionPhase, SessionState

logger = logging.getLogger(__name__)

SLOT_POLL_SECONDS = 5.0
WAIT_STEP_SECONDS = 0.5


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Two-party scheduled meeting client")
    parser.add_argument(
        "--directory-url",
        default=os.environ.get("SLOTMEET_DIRECTORY_URL"),
        help="Base URL of the meeting directory (env SLOTMEET_DIRECTORY_URL)",
    )
    parser.add_argument(
        "--relay-host",
        default=os.environ.get("SLOTMEET_RELAY_HOST"),
        help="Hostname or IP of the relay server (env SLOTMEET_RELAY_HOST)",
    )
    parser.add_argument(
        "--relay-port",
        type=int,
        default=int(os.environ.get("SLOTMEET_RELAY_PORT", "3010")),
        help="Relay server TCP port (env SLOTMEET_RELAY_PORT)",
    )
    parser.add_argument("--ice-server", action="append", default=[], help="STUN/TURN URL; may be repeated")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a meeting and print the invite link")
    create.add_argument("recipient", help="Recipient WhatsApp number, e.g. +919876543210")
    create.add_argument("--send-invite", action="store_true", help="Ask the directory to dispatch the invite")

    schedule = commands.add_parser("schedule", help="Confirm the slot for a meeting")
    schedule.add_argument("meeting_id")
    schedule.add_argument("slot_time", help="Time of day as HH:MM")

    join = commands.add_parser("join", help="Wait for the join window and run the call")
    join.add_argument("meeting_id")
    return parser


def _print_state(state: SessionState, countdown: int) -> None:
    if state.phase == SessionPhase.SLOT_CONFIRMED:
        print(f"\rConfirmed slot {state.slot}: {countdown} seconds left to join ", end="", flush=True)
    elif state.phase == SessionPhase.JOINABLE_NOW:
        print(f"\rConfirmed slot {state.slot}: join window is open{' ' * 12}", flush=True)


async def _create(app: MeetingApp, args: argparse.Namespace) -> int:
    created = await app.create_meeting(args.recipient, send_invite=args.send_invite)
    if created is None:
        print(f"Error: {app.last_error}", file=sys.stderr)
        return 1
    print(f"Meeting ID: {created.meeting_id}")
    print(f"Meeting link: {created.meeting_link}")
    print(f"Share via WhatsApp: {app.invite_link(created)}")
    return 0


async def _schedule(app: MeetingApp, args: argparse.Namespace) -> int:
    state = await app.open_meeting(args.meeting_id)
    if state.phase == SessionPhase.EXPIRED:
        print(f"Meeting link expired or invalid: {state.message}", file=sys.stderr)
        return 1
    if not await app.confirm_slot(args.slot_time):
        print(app.last_error, file=sys.stderr)
        return 1
    print(f"Slot confirmed for {args.slot_time}.")
    return 0


async def _wait_for_join_window(
    session: MeetingSession,
    stop_event: asyncio.Event,
    *,
    poll_interval: float = SLOT_POLL_SECONDS,
) -> bool:
    """Poll the directory until the join window opens. False if stopped or expired."""

    loop = asyncio.get_running_loop()
    next_refresh = loop.time() + poll_interval
    announced = False
    while not session.can_join and not stop_event.is_set():
        if session.phase == SessionPhase.EXPIRED:
            return False
        if session.phase == SessionPhase.AWAITING_SLOT and not announced:
            print("Waiting for a slot to be confirmed...")
            announced = True
        await asyncio.sleep(min(WAIT_STEP_SECONDS, poll_interval))
        if loop.time() >= next_refresh:
            await session.refresh()
            next_refresh = loop.time() + poll_interval
    return session.can_join


async def _join(app: MeetingApp, args: argparse.Namespace, stop_event: asyncio.Event) -> int:
    state = await app.open_meeting(args.meeting_id)
    if state.phase == SessionPhase.EXPIRED:
        print(f"Meeting link expired or invalid: {state.message}", file=sys.stderr)
        return 1
    session = app.session
    assert session is not None
    session.subscribe(_print_state)

    if not await _wait_for_join_window(session, stop_event):
        if session.phase == SessionPhase.EXPIRED:
            print(f"Meeting link expired or invalid: {session.message}", file=sys.stderr)
            return 1
        return 0

    if not await app.join_call():
        print(app.last_error, file=sys.stderr)
        return 1
    print("In the room; waiting for the other participant. Press Ctrl+C to leave.")

    finished = asyncio.create_task(app.wait_for_call_end())
    stopped = asyncio.create_task(stop_event.wait())
    await asyncio.wait({finished, stopped}, return_when=asyncio.FIRST_COMPLETED)
    for task in (finished, stopped):
        task.cancel()
    await app.leave_call()
    if app.last_error:
        print(app.last_error, file=sys.stderr)
    return 0


async def _run(args: argparse.Namespace) -> int:
    from aiortc.contrib.media import MediaBlackhole

    sink = MediaBlackhole()

    async def consume_remote_track(track) -> None:
        sink.addTrack(track)
        await sink.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    app = MeetingApp(
        DirectoryClient(args.directory_url),
        relay_host=args.relay_host,
        relay_port=args.relay_port,
        ice_servers=args.ice_server,
        on_remote_track=consume_remote_track,
    )
    try:
        if args.command == "create":
            return await _create(app, args)
        if args.command == "schedule":
            return await _schedule(app, args)
        return await _join(app, args, stop_event)
    finally:
        await app.close()
        await sink.stop()


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.directory_url:
        parser.error("--directory-url (or SLOTMEET_DIRECTORY_URL) is required")
    if not args.relay_host:
        parser.error("--relay-host (or SLOTMEET_RELAY_HOST) is required")

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        exit_code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
