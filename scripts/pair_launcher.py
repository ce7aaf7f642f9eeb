"""Utility for launching the relay/directory server plus both participants of one meeting."""
from __future__ import annotations

import argparse
import atexit
import signal
import subprocess
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path

import httpx

ProcessRecord = tuple[str, subprocess.Popen]

PROCESSES: list[ProcessRecord] = []


def _register_process(name: str, proc: subprocess.Popen) -> None:
    PROCESSES.append((name, proc))


def _terminate_process(name: str, proc: subprocess.Popen, timeout: float) -> None:
    if proc.poll() is not None:
        return
    # SIGINT lets the clients leave the room before exiting.
    proc.send_signal(signal.SIGINT)
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()


def _cleanup() -> None:
    while PROCESSES:
        name, proc = PROCESSES.pop()
        try:
            _terminate_process(name, proc, timeout=5.0)
        except Exception:
            pass


def _handle_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
    _cleanup()
    sys.exit(0)


def soonest_slot(now: datetime, lead_minutes: int = 2) -> str:
    """Return an ``HH:MM`` slot whose join window is already open at ``now``."""

    target = (now + timedelta(minutes=lead_minutes)).replace(second=0, microsecond=0)
    return target.strftime("%H:%M")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch the server and two clients joined to one meeting")
    parser.add_argument("recipient", help="Recipient phone number used to create the meeting")
    parser.add_argument("--python", default=sys.executable, help="Python interpreter to use for subprocesses")
    parser.add_argument("--server-host", default="127.0.0.1")
    parser.add_argument("--relay-port", type=int, default=3010)
    parser.add_argument("--directory-port", type=int, default=3001)
    parser.add_argument("--slot", default=None, help="Slot as HH:MM (defaults to one whose window is open now)")
    parser.add_argument("--client-delay", type=float, default=1.0, help="Delay between starting clients")
    parser.add_argument("--server-startup-delay", type=float, default=2.0, help="Delay before creating the meeting")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Working directory")
    return parser.parse_args()


def _launch_process(name: str, cmd: list[str], cwd: str) -> subprocess.Popen:
    proc = subprocess.Popen(cmd, cwd=cwd)
    _register_process(name, proc)
    return proc


def main() -> None:
    args = _parse_args()
    atexit.register(_cleanup)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle_signal)
        except Exception:
            pass

    workdir = args.workspace
    python_exec = args.python
    directory_url = f"http://{args.server_host}:{args.directory_port}"

    server_cmd = [
        python_exec,
        "-m",
        "server",
        "--host",
        args.server_host,
        "--relay-port",
        str(args.relay_port),
        "--directory-host",
        args.server_host,
        "--directory-port",
        str(args.directory_port),
    ]
    print(f"Starting server: {' '.join(server_cmd)}")
    _launch_process("server", server_cmd, cwd=workdir)

    time.sleep(max(args.server_startup_delay, 0.0))

    created = httpx.post(f"{directory_url}/create-meeting", json={"recipientPhoneNumber": args.recipient}).json()
    if not created.get("success"):
        print(f"Could not create meeting: {created.get('message')}", file=sys.stderr)
        sys.exit(1)
    meeting_id = created["meetingId"]
    slot = args.slot or soonest_slot(datetime.now())
    selected = httpx.post(f"{directory_url}/select-slot", json={"meetingId": meeting_id, "slotTime": slot}).json()
    if not selected.get("success"):
        print(f"Could not confirm slot {slot}: {selected.get('message')}", file=sys.stderr)
        sys.exit(1)
    print(f"Meeting {meeting_id} confirmed for {slot}")

    for index in range(2):
        client_cmd = [
            python_exec,
            "-m",
            "client",
            "--directory-url",
            directory_url,
            "--relay-host",
            args.server_host,
            "--relay-port",
            str(args.relay_port),
            "join",
            meeting_id,
        ]
        print(f"Starting participant {index + 1}/2")
        _launch_process(f"participant-{index + 1}", client_cmd, cwd=workdir)
        time.sleep(max(args.client_delay, 0.0))

    print("All processes started. Press Ctrl+C to stop everything.")

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()


if __name__ == "__main__":
    main()
