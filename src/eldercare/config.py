"""User-configurable values loaded from environment variables."""

import os
import sys
from datetime import timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

_REQUIRED = ("ELDERCARE_TASK_SECRET",)
_missing = [var for var in _REQUIRED if not os.environ.get(var)]
if _missing:
    print(f"Missing required env vars: {', '.join(_missing)}", file=sys.stderr)
    print("Set them in .env or your environment.", file=sys.stderr)
    raise SystemExit(1)

TASK_SECRET: str = os.environ["ELDERCARE_TASK_SECRET"]
HOST: str = os.environ.get("ELDERCARE_HOST") or "127.0.0.1"
PORT: int = int(os.environ.get("ELDERCARE_PORT") or 8080)
LOG_LEVEL: str = (os.environ.get("ELDERCARE_LOG_LEVEL") or "INFO").upper()
EXPO_PUSH_URL: str = (
    os.environ.get("ELDERCARE_EXPO_URL") or "https://exp.host/--/api/v2/push/send"
)
DATA_DIR_DEFAULT: Path = Path(
    os.environ.get("ELDERCARE_DATA_DIR") or Path.home() / ".eldercare"
)

# Escalation timing
GRACE = timedelta(minutes=2)  # ring -> timeout check
DEFAULT_FOLLOW_UP_MINUTES = 10

# Delayed task queue limits
MAX_HORIZON = timedelta(days=30)
CLAMP_EPSILON = timedelta(seconds=5)
RETRY_DELAY = timedelta(seconds=30)
MAX_ATTEMPTS = 3
POLL_SECONDS = 10


def _detect_local_tz() -> str:
    """Detect the system's IANA timezone name. Falls back to UTC."""
    # Debian/Ubuntu: plain text file with IANA name
    etc_tz = Path("/etc/timezone")
    if etc_tz.exists():
        name = etc_tz.read_text().strip()
        if name:
            return name

    # Most Linux/WSL: /etc/localtime is a symlink into zoneinfo
    localtime = Path("/etc/localtime")
    if localtime.is_symlink():
        target = str(localtime.resolve())
        marker = "/zoneinfo/"
        idx = target.find(marker)
        if idx != -1:
            return target[idx + len(marker) :]

    return "UTC"


TZ: ZoneInfo = ZoneInfo(os.environ.get("ELDERCARE_TIMEZONE") or _detect_local_tz())
