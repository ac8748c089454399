"""User directory and the per-parent missed-reminder counter.

User records belong to the account system; the reminder core only reads them
to find device addresses and the caregiver link. The missed counter is a
separate aggregate that is only ever changed through `increment_missed`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path

from eldercare.storage import DATA_DIR, STATE_DIR, locked, read_json, write_json

USERS_FILE: Path = DATA_DIR / "users.json"
MISSED_FILE: Path = STATE_DIR / "missed_reminders.json"


@dataclass(frozen=True, slots=True)
class User:
    id: str
    name: str = ""
    nickname: str = ""
    role: str = "parent"  # parent | child
    push_token: str | None = None
    connected_to: str | None = None

    @property
    def display_name(self) -> str:
        return self.nickname or self.name or "Your parent"


def _load() -> dict[str, User]:
    known = {f.name for f in fields(User)}
    raw: dict[str, dict] = read_json(USERS_FILE, {})
    return {
        uid: User(**{k: v for k, v in data.items() if k in known})
        for uid, data in raw.items()
    }


def _save(users: dict[str, User]) -> None:
    write_json(USERS_FILE, {uid: asdict(u) for uid, u in users.items()})


def get_user(user_id: str) -> User | None:
    return _load().get(user_id)


def list_users() -> list[User]:
    return sorted(_load().values(), key=lambda u: u.id)


def save_user(user: User) -> None:
    users = _load()
    users[user.id] = user
    _save(users)


def link_users(parent_id: str, child_id: str) -> bool:
    """Connect a parent and caregiver both ways. False if either is unknown."""
    users = _load()
    parent = users.get(parent_id)
    child = users.get(child_id)
    if parent is None or child is None:
        return False
    users[parent_id] = replace(parent, connected_to=child_id)
    users[child_id] = replace(child, connected_to=parent_id)
    _save(users)
    return True


def find_caregiver(parent_id: str) -> tuple[User, User] | None:
    """(parent, caregiver) when the parent has a linked caregiver record."""
    users = _load()
    parent = users.get(parent_id)
    if parent is None or not parent.connected_to:
        return None
    child = users.get(parent.connected_to)
    if child is None:
        return None
    return parent, child


# --- Missed counter ---


def increment_missed(user_id: str, by: int = 1) -> int:
    """Atomic increment; returns the new value."""
    with locked(MISSED_FILE):
        counts: dict[str, int] = read_json(MISSED_FILE, {})
        counts[user_id] = counts.get(user_id, 0) + by
        write_json(MISSED_FILE, counts)
        return counts[user_id]


def missed_count(user_id: str) -> int:
    return read_json(MISSED_FILE, {}).get(user_id, 0)


def reset_missed(user_id: str) -> None:
    """Cleared by the caregiver once the missed-reminders alert was seen."""
    with locked(MISSED_FILE):
        counts: dict[str, int] = read_json(MISSED_FILE, {})
        if counts.pop(user_id, None) is not None:
            write_json(MISSED_FILE, counts)
