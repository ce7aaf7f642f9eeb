from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from datetime import timedelta
from pathlib import Path
from typing import Optional

from server.directory import DEFAULT_SLOT_MINUTES, DirectoryServer, MeetingStore
from server.relay_server import RelayServer
from server.room_registry import RoomRegistry
from shared.protocol import INVITE_LIFETIME_MINUTES

logger = logging.getLogger(__name__)

PURGE_INTERVAL = 60.0  # seconds


async def _purge_loop(store: MeetingStore, interval: float = PURGE_INTERVAL) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await store.purge_expired()
        except Exception:
            logger.exception("Failed to purge expired meetings")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Scheduled meeting relay and directory server")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the relay server")
    parser.add_argument("--relay-port", type=int, default=3010, help="TCP relay (signaling) port")
    parser.add_argument("--directory-host", default="0.0.0.0", help="Host for the meeting directory HTTP server")
    parser.add_argument("--directory-port", type=int, default=3001, help="Port for the meeting directory HTTP server")
    parser.add_argument(
        "--public-url",
        default=None,
        help="Base URL used when building meeting links (defaults to the directory address)",
    )
    parser.add_argument(
        "--meeting-lifetime-minutes",
        type=float,
        default=INVITE_LIFETIME_MINUTES,
        help="Lifetime of a meeting link while no slot is confirmed",
    )
    parser.add_argument("--slot-minutes", type=float, default=DEFAULT_SLOT_MINUTES, help="Length of a meeting slot")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )

    registry = RoomRegistry()
    relay_server = RelayServer(args.host, args.relay_port, registry)
    store = MeetingStore(
        meeting_lifetime=timedelta(minutes=args.meeting_lifetime_minutes),
        slot_length=timedelta(minutes=args.slot_minutes),
    )
    directory_server = DirectoryServer(
        store,
        host=args.directory_host,
        port=args.directory_port,
        public_url=args.public_url,
    )

    stop_event = asyncio.Event()
    shutdown_requested: Optional[str] = None

    def _signal_handler() -> None:
        nonlocal shutdown_requested
        if shutdown_requested:
            logger.debug("Shutdown already in progress")
            return
        shutdown_requested = "Shutdown signal"
        logger.info("%s initiated shutdown", shutdown_requested)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await relay_server.start()
    await directory_server.start()

    heartbeat_task = asyncio.create_task(registry.heartbeat_watcher())
    purge_task = asyncio.create_task(_purge_loop(store))

    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    for task in (heartbeat_task, purge_task):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    try:
        await relay_server.stop()
    except Exception:
        logger.exception("Error stopping relay server")

    try:
        await directory_server.stop()
    except Exception:
        logger.exception("Error stopping directory server")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
