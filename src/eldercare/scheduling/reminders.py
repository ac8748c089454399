"""Reminder data model and the durable reminder store.

A reminder rings its parent at `scheduled_at`, rings once more after a
timeout, and then escalates to the caregiver. The store keeps one markdown
file per reminder, applies conditional (compare-and-set) updates, and tells
subscribers about every created/updated/deleted record.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from eldercare.config import DEFAULT_FOLLOW_UP_MINUTES
from eldercare.errors import HorizonExceeded, ReminderNotFound
from eldercare.storage import DATA_DIR, TZ, read_md, read_md_dir, remove_file, write_md

REMINDERS_DIR = DATA_DIR / "reminders"

PENDING = "pending"
DONE = "done"
SNOOZED = "snoozed"
MISSED = "missed"
STATUSES = (PENDING, DONE, SNOOZED, MISSED)
FINAL_RING = 2

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reminder:
    id: str
    for_user: str
    title: str
    scheduled_at: str  # ISO datetime
    message: str = ""
    created_by: str = ""
    status: str = PENDING
    ring_count: int = 1
    miss_count: int = 0
    snooze_count: int = 0
    follow_up_minutes: int = DEFAULT_FOLLOW_UP_MINUTES
    send_task_id: str | None = None
    timeout_task_id: str | None = None
    notification_sent: bool = False
    notification_sent_at: str | None = None
    completed_at: str | None = None
    snoozed_until: str | None = None
    created_at: str = ""

    def __post_init__(self) -> None:
        if self.status not in STATUSES:
            raise ValueError(f"Unknown reminder status: {self.status}")
        if self.ring_count not in (1, FINAL_RING):
            raise ValueError(f"ring_count must be 1 or 2, got {self.ring_count}")

    @property
    def scheduled_time(self) -> datetime:
        return datetime.fromisoformat(self.scheduled_at)

    @property
    def is_pending(self) -> bool:
        return self.status == PENDING

    def ring_guard(self) -> dict[str, Any]:
        """Fields a transition must still observe for its write to apply."""
        return {
            "status": self.status,
            "ring_count": self.ring_count,
            "scheduled_at": self.scheduled_at,
        }

    @staticmethod
    def new(
        for_user: str,
        title: str,
        *,
        at: datetime | None = None,
        delay_minutes: int | None = None,
        message: str = "",
        created_by: str | None = None,
        follow_up_minutes: int = DEFAULT_FOLLOW_UP_MINUTES,
    ) -> "Reminder":
        """Create a pending first-ring reminder at `at` or `delay_minutes` from now."""
        now = datetime.now(TZ)
        assert (at is None) != (delay_minutes is None), (
            "give exactly one of at / delay_minutes"
        )
        when = at if at is not None else now + timedelta(minutes=delay_minutes or 0)
        if when.tzinfo is None:
            when = when.replace(tzinfo=TZ)
        return Reminder(
            id=uuid4().hex[:8],
            for_user=for_user,
            title=title,
            scheduled_at=when.isoformat(),
            message=message,
            created_by=created_by or for_user,
            follow_up_minutes=follow_up_minutes,
            created_at=now.isoformat(),
        )


# --- Change events ---


@dataclass(frozen=True, slots=True)
class Created:
    after: Reminder


@dataclass(frozen=True, slots=True)
class Updated:
    before: Reminder
    after: Reminder


@dataclass(frozen=True, slots=True)
class Deleted:
    before: Reminder


ReminderEvent = Created | Updated | Deleted
Listener = Callable[[ReminderEvent], Awaitable[None]]


class ReminderStore:
    """File-backed reminder records with conditional updates and change events.

    Listeners are awaited after the write is committed, outside the store
    lock, so a listener may write to the store again. Exceptions raised by a
    listener propagate to the writer.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory or REMINDERS_DIR
        self._lock = asyncio.Lock()
        self._known: dict[str, Reminder] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _path(self, reminder_id: str) -> Path:
        return self.directory / f"{reminder_id}.md"

    async def get(self, reminder_id: str) -> Reminder | None:
        return read_md(self._path(reminder_id), Reminder)

    async def list_reminders(self) -> list[Reminder]:
        return read_md_dir(self.directory, Reminder)

    async def create(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            path = self._path(reminder.id)
            if path.exists():
                raise ValueError(f"reminder already exists: {reminder.id}")
            write_md(path, reminder)
            self._known[reminder.id] = reminder
        log.info("Reminder %s created for %s", reminder.id, reminder.for_user)
        try:
            await self._emit(Created(after=reminder))
        except HorizonExceeded:
            # A record that can never be armed is not kept
            async with self._lock:
                remove_file(path)
                self._known.pop(reminder.id, None)
            log.warning("Reminder %s is beyond the scheduling horizon", reminder.id)
            raise
        return reminder

    async def update(
        self,
        reminder_id: str,
        changes: Mapping[str, Any],
        *,
        when: Mapping[str, Any] | None = None,
    ) -> Reminder | None:
        """Apply `changes` only if every field in `when` still has that value.

        Returns the updated record, or None when a condition failed. Raises
        ReminderNotFound when the record does not exist.
        """
        async with self._lock:
            current = read_md(self._path(reminder_id), Reminder)
            if current is None:
                raise ReminderNotFound(reminder_id)
            if when:
                stale = {k for k, v in when.items() if getattr(current, k) != v}
                if stale:
                    log.debug(
                        "Reminder %s: condition failed on %s", reminder_id, sorted(stale)
                    )
                    return None
            updated = replace(current, **changes)
            if updated == current:
                return current
            write_md(self._path(reminder_id), updated)
            self._known[reminder_id] = updated
        await self._emit(Updated(before=current, after=updated))
        return updated

    async def delete(self, reminder_id: str) -> Reminder | None:
        async with self._lock:
            current = read_md(self._path(reminder_id), Reminder)
            self._known.pop(reminder_id, None)
            if current is None or not remove_file(self._path(reminder_id)):
                return None
        log.info("Reminder %s deleted", reminder_id)
        await self._emit(Deleted(before=current))
        return current

    async def refresh(self) -> int:
        """Diff the files on disk against the last known state and emit events.

        Picks up records written by other processes (the CLI). Returns the
        number of events emitted.
        """
        async with self._lock:
            on_disk = {r.id: r for r in read_md_dir(self.directory, Reminder)}
            events: list[ReminderEvent] = []
            for rid, after in on_disk.items():
                before = self._known.get(rid)
                if before is None:
                    events.append(Created(after=after))
                elif before != after:
                    events.append(Updated(before=before, after=after))
            for rid, before in self._known.items():
                if rid not in on_disk:
                    events.append(Deleted(before=before))
            self._known = on_disk

        for event in events:
            try:
                await self._emit(event)
            except Exception:
                log.exception("Error handling %s from refresh", type(event).__name__)
        return len(events)

    async def _emit(self, event: ReminderEvent) -> None:
        for listener in list(self._listeners):
            await listener(event)
