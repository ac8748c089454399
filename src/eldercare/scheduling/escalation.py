"""Escalation state machine: queue-fired handlers and user actions.

    pending(ring 1) --timeout--> pending(ring 2) --timeout--> missed
          |  snooze / I'm on it -----^                 ^
          |-- dismiss -------------------------------->|
          `-- done --> done (from either ring)

Every transition is a conditional write on the (status, ring, scheduled_at)
the handler observed. When another writer got there first the condition
fails and the transition is a no-op, which also makes redelivered tasks
harmless. Queue operations follow from the store's change events; only
snooze and "I'm on it" arm their own timeout, since no new push is sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from eldercare import users
from eldercare.errors import InvalidArgument, ReminderNotFound
from eldercare.notifications import Notifier
from eldercare.scheduling.actions import (
    Acknowledge,
    Action,
    Dismiss,
    Done,
    Snooze,
    parse_action,
)
from eldercare.scheduling.reminders import (
    DONE,
    FINAL_RING,
    MISSED,
    Reminder,
    ReminderStore,
)
from eldercare.scheduling.scheduler import ReminderScheduler
from eldercare.storage import TZ

log = logging.getLogger(__name__)

# Handler outcomes, reported back to the queue / HTTP caller
SENT = "sent"
SEND_FAILED = "send_failed"
ALREADY_SENT = "already_sent"
ADVANCED = "advanced"
ESCALATED = "missed"
NOT_FOUND = "not_found"
NOT_PENDING = "not_pending"
STALE = "stale"
LOST_RACE = "lost_race"


@dataclass(frozen=True, slots=True)
class ActionResult:
    reminder_id: str
    action: str
    applied: bool
    status: str


def _is_stale(reminder: Reminder, payload: dict[str, Any]) -> bool:
    """True when the task belongs to an earlier ring or an older schedule."""
    ring = payload.get("ring_count")
    if ring is not None and int(ring) != reminder.ring_count:
        return True
    at = payload.get("scheduled_at")
    if at is not None and datetime.fromisoformat(at) != reminder.scheduled_time:
        return True
    return False


class EscalationMachine:
    def __init__(
        self,
        store: ReminderStore,
        reminders: ReminderScheduler,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.reminders = reminders
        self.notifier = notifier

    async def _load_pending(self, payload: dict[str, Any], kind: str) -> Reminder | str:
        reminder_id = payload["reminder_id"]
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            log.warning("%s: reminder %s not found, may have been deleted", kind, reminder_id)
            return NOT_FOUND
        if not reminder.is_pending:
            log.info(
                "%s: reminder %s is %s, nothing to do", kind, reminder_id, reminder.status
            )
            return NOT_PENDING
        if _is_stale(reminder, payload):
            log.info(
                "%s: reminder %s moved on (ring %d at %s), ignoring %s",
                kind,
                reminder_id,
                reminder.ring_count,
                reminder.scheduled_at,
                payload,
            )
            return STALE
        return reminder

    async def on_send(self, payload: dict[str, Any]) -> str:
        """Send task fired: push the ring to the parent once."""
        try:
            loaded = await self._load_pending(payload, "send")
            if isinstance(loaded, str):
                return loaded
            if loaded.notification_sent:
                return ALREADY_SENT
            # Claim before dispatching so a redelivered task cannot push twice
            claimed = await self.store.update(
                loaded.id,
                {
                    "notification_sent": True,
                    "notification_sent_at": datetime.now(TZ).isoformat(),
                },
                when={**loaded.ring_guard(), "notification_sent": False},
            )
        except ReminderNotFound:
            return NOT_FOUND
        if claimed is None:
            return LOST_RACE

        if await self.notifier.ring(claimed):
            log.info("Reminder %s ring %d sent", claimed.id, claimed.ring_count)
            return SENT
        log.error("Failed to send reminder %s ring %d", claimed.id, claimed.ring_count)
        return SEND_FAILED

    async def on_timeout(self, payload: dict[str, Any]) -> str:
        """Timeout task fired: advance to the final ring or mark missed."""
        try:
            loaded = await self._load_pending(payload, "timeout")
            if isinstance(loaded, str):
                return loaded
            if loaded.ring_count >= FINAL_RING:
                return await self._miss(loaded)
            return await self._advance(loaded)
        except ReminderNotFound:
            return NOT_FOUND

    async def _advance(self, reminder: Reminder) -> str:
        follow_up = datetime.now(TZ) + timedelta(minutes=reminder.follow_up_minutes)
        advanced = await self.store.update(
            reminder.id,
            {
                "scheduled_at": follow_up.isoformat(),
                "ring_count": FINAL_RING,
                "miss_count": reminder.miss_count + 1,
                "notification_sent": False,
            },
            when=reminder.ring_guard(),
        )
        if advanced is None:
            return LOST_RACE
        log.info(
            "Reminder %s: first ring timed out, final ring at %s",
            reminder.id,
            advanced.scheduled_at,
        )
        return ADVANCED

    async def _miss(self, reminder: Reminder) -> str:
        missed = await self.store.update(
            reminder.id,
            {"status": MISSED, "miss_count": reminder.miss_count + 1},
            when=reminder.ring_guard(),
        )
        if missed is None:
            return LOST_RACE
        log.info("Reminder %s: final ring timed out, marked missed", reminder.id)
        users.increment_missed(reminder.for_user)
        await self.notifier.escalate(missed)
        return ESCALATED

    # --- user actions ---

    async def handle_action(
        self,
        reminder_id: str,
        action: str | Action,
        minutes: int | None = None,
    ) -> ActionResult:
        """Entry point for the parent's Done / Snooze / I'm on it / Dismiss.

        Raises ReminderNotFound for an unknown id and InvalidArgument for an
        unknown action. Returns applied=False when the reminder is no longer
        pending or another transition won the race.
        """
        if not reminder_id:
            raise InvalidArgument("Missing reminder id")
        if isinstance(action, str):
            action = parse_action(action, minutes)

        reminder = await self.store.get(reminder_id)
        if reminder is None:
            raise ReminderNotFound(reminder_id)
        log.info("Handling %s for reminder %s", action.name, reminder_id)

        if not reminder.is_pending:
            log.info("Reminder %s is already %s", reminder_id, reminder.status)
            return ActionResult(reminder_id, action.name, False, reminder.status)

        if isinstance(action, Done):
            updated = await self._done(reminder)
        elif isinstance(action, (Snooze, Acknowledge)):
            updated = await self._postpone(reminder, action)
        elif isinstance(action, Dismiss):
            updated = await self._dismiss(reminder)
        else:
            raise InvalidArgument(f"Unknown action: {action!r}")

        if updated is None:
            current = await self.store.get(reminder_id)
            status = current.status if current else reminder.status
            return ActionResult(reminder_id, action.name, False, status)
        return ActionResult(reminder_id, action.name, True, updated.status)

    async def _done(self, reminder: Reminder) -> Reminder | None:
        done = await self.store.update(
            reminder.id,
            {"status": DONE, "completed_at": datetime.now(TZ).isoformat()},
            when=reminder.ring_guard(),
        )
        if done is not None:
            log.info("Reminder %s marked as done", reminder.id)
            await self.notifier.completed(done)
        return done

    async def _postpone(
        self, reminder: Reminder, action: Snooze | Acknowledge
    ) -> Reminder | None:
        """Jump to the final ring, checked again after `minutes` with no new push."""
        minutes = action.minutes or reminder.follow_up_minutes
        until = datetime.now(TZ) + timedelta(minutes=minutes)
        timeout_id = self.reminders.schedule_timeout(reminder.id, until, FINAL_RING)

        changes: dict[str, Any] = {
            "scheduled_at": until.isoformat(),
            "ring_count": FINAL_RING,
            "miss_count": reminder.miss_count + 1,
            "notification_sent": False,
            "send_task_id": None,
            "timeout_task_id": timeout_id,
        }
        if isinstance(action, Snooze):
            changes["snooze_count"] = reminder.snooze_count + 1
            changes["snoozed_until"] = until.isoformat()

        try:
            updated = await self.store.update(
                reminder.id, changes, when=reminder.ring_guard()
            )
        except ReminderNotFound:
            self.reminders.cancel_tasks(timeout_id)
            raise
        if updated is None:
            self.reminders.cancel_tasks(timeout_id)
            return None

        # Acknowledging still counts against the parent, same as a snooze
        users.increment_missed(reminder.for_user)
        log.info(
            "Reminder %s: %s until %s", reminder.id, action.name, updated.scheduled_at
        )
        return updated

    async def _dismiss(self, reminder: Reminder) -> Reminder | None:
        missed = await self.store.update(
            reminder.id,
            {"status": MISSED, "miss_count": reminder.miss_count + 1},
            when=reminder.ring_guard(),
        )
        if missed is not None:
            users.increment_missed(reminder.for_user)
            log.info("Reminder %s dismissed by user", reminder.id)
            await self.notifier.escalate(missed, dismissed=True)
        return missed
