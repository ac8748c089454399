"""Entry point for eldercare."""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
import sys
from pathlib import Path

from eldercare.storage import STATE_DIR

PID_FILE = STATE_DIR / "eldercare.pid"


HELP = """\
eldercare -- reminder rings for a parent, escalation to their caregiver

commands:
  eldercare                    Run the scheduler and HTTP server
  eldercare reminder add       Create a reminder for a parent
  eldercare reminder list      Show pending reminders (--all for every status)
  eldercare reminder show      Show one reminder in full
  eldercare reminder delete    Delete a reminder by ID
  eldercare user add           Add or replace a user record
  eldercare user link          Connect a parent with a caregiver
  eldercare user list          Show users
  eldercare user missed        Show or reset a parent's missed count
  eldercare help               Show this help message

examples:
  eldercare user add mom --nickname Mom --token "ExponentPushToken[xxxx]"
  eldercare reminder add --for mom -t "Blood pressure pill" --delay 30
  eldercare reminder add --for mom -t "Lunch" --at 2026-03-01T12:30
"""


def _check_already_running() -> None:
    STATE_DIR.mkdir(parents=True, exist_ok=True)
    if PID_FILE.exists():
        pid = int(PID_FILE.read_text().strip())
        proc_cmdline = Path(f"/proc/{pid}/cmdline")
        if proc_cmdline.exists() and "eldercare" in proc_cmdline.read_bytes().decode(
            errors="replace"
        ):
            print(f"eldercare is already running (pid {pid})")
            raise SystemExit(1)
    PID_FILE.write_text(str(os.getpid()))
    atexit.register(PID_FILE.unlink, missing_ok=True)


def _dispatch_subcommand() -> bool:
    """Route CLI subcommands. Returns True if handled."""
    if len(sys.argv) < 2:
        return False
    cmd = sys.argv[1]
    rest = sys.argv[2:]
    if cmd in ("help", "--help", "-h"):
        print(HELP)
        return True
    routes: dict[str, tuple[str, str]] = {
        "reminder": ("eldercare.scheduling.reminder_cmd", "run_reminder_command"),
        "user": ("eldercare.user_cmd", "run_user_command"),
    }
    if cmd in routes:
        from importlib import import_module

        mod_path, func_name = routes[cmd]
        getattr(import_module(mod_path), func_name)(rest)
        return True
    return False


log = logging.getLogger(__name__)


async def _run() -> None:
    """Run until SIGINT/SIGTERM, then stop the server and scheduler."""
    from eldercare import server
    from eldercare.config import TASK_SECRET
    from eldercare.notifications import ExpoDispatcher
    from eldercare.scheduling.scheduler import setup_scheduler, start

    dispatcher = ExpoDispatcher()
    runtime = setup_scheduler(dispatcher)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    await start(runtime)
    await server.start(runtime.machine, runtime.queue, secret=TASK_SECRET)
    log.info("eldercare running")
    try:
        await stop_event.wait()
    finally:
        log.info("Shutting down")
        await server.stop()
        runtime.scheduler.shutdown(wait=False)
        await dispatcher.close()


def main() -> None:
    if _dispatch_subcommand():
        return

    from eldercare.config import LOG_LEVEL

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    _check_already_running()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
