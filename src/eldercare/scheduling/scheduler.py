"""Keeps the delayed task queue in sync with reminder state.

Every pending reminder owns one ring: a send task at `scheduled_at` and a
timeout task `GRACE` later. The ReminderScheduler reacts to store events
(created / updated / deleted) by arming, re-arming or cancelling that pair.
`setup_scheduler` wires the store, queue, scheduler and escalation handlers
onto one AsyncIOScheduler, and polls the store every few seconds so records
written by other processes are picked up too.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from eldercare.config import GRACE, POLL_SECONDS
from eldercare.errors import ReminderNotFound
from eldercare.scheduling.queue import SEND, TIMEOUT, DelayedTaskQueue, task_id_for
from eldercare.scheduling.reminders import (
    Created,
    Deleted,
    Reminder,
    ReminderEvent,
    ReminderStore,
    Updated,
)
from eldercare.storage import TZ

if TYPE_CHECKING:
    from eldercare.notifications import Dispatcher
    from eldercare.scheduling.escalation import EscalationMachine

log = logging.getLogger(__name__)


def _payload(reminder_id: str, ring_count: int, scheduled_at: datetime) -> dict:
    return {
        "reminder_id": reminder_id,
        "ring_count": ring_count,
        "scheduled_at": scheduled_at.isoformat(),
    }


class ReminderScheduler:
    def __init__(
        self,
        store: ReminderStore,
        queue: DelayedTaskQueue,
        *,
        grace: timedelta = GRACE,
    ) -> None:
        self.store = store
        self.queue = queue
        self.grace = grace

    async def handle_event(self, event: ReminderEvent) -> None:
        if isinstance(event, Created):
            await self.on_created(event.after)
        elif isinstance(event, Updated):
            await self.on_updated(event.before, event.after)
        elif isinstance(event, Deleted):
            self.on_deleted(event.before)

    async def on_created(self, reminder: Reminder) -> None:
        if not reminder.is_pending:
            return
        if self.queue.get(reminder.send_task_id or "") or self.queue.get(
            reminder.timeout_task_id or ""
        ):
            # Already armed, e.g. tasks restored after a restart
            return
        if reminder.scheduled_time <= datetime.now(TZ):
            log.warning(
                "Reminder %s is in the past (%s), skipping task scheduling",
                reminder.id,
                reminder.scheduled_at,
            )
            return
        await self._arm_ring(reminder)

    async def on_updated(self, before: Reminder, after: Reminder) -> None:
        if before.is_pending and not after.is_pending:
            log.info(
                "Reminder %s is now %s, cancelling tasks", after.id, after.status
            )
            self.cancel_tasks(
                before.send_task_id,
                before.timeout_task_id,
                after.send_task_id,
                after.timeout_task_id,
            )
            return

        if not after.is_pending or after.scheduled_at == before.scheduled_at:
            return

        if after.timeout_task_id and after.timeout_task_id != before.timeout_task_id:
            # The writer armed this ring itself (snooze, "I'm on it")
            self.cancel_tasks(
                *{before.send_task_id, before.timeout_task_id}
                - {after.send_task_id, after.timeout_task_id}
            )
            return

        self.cancel_tasks(before.send_task_id, before.timeout_task_id)
        if after.scheduled_time <= datetime.now(TZ):
            log.warning(
                "Reminder %s moved into the past, not rescheduling", after.id
            )
            return
        log.info(
            "Reminder %s rescheduled %s -> %s (ring %d)",
            after.id,
            before.scheduled_at,
            after.scheduled_at,
            after.ring_count,
        )
        await self._arm_ring(after)

    def on_deleted(self, before: Reminder) -> None:
        log.info("Reminder %s deleted, cancelling tasks", before.id)
        self.cancel_tasks(before.send_task_id, before.timeout_task_id)

    # --- queue operations ---

    def schedule_ring(self, reminder: Reminder) -> tuple[str, str]:
        """Arm send at `scheduled_at` and timeout `grace` later for the current ring."""
        at = reminder.scheduled_time
        send_id = self.queue.schedule(
            task_id_for(reminder.id, SEND, reminder.ring_count),
            at,
            SEND,
            _payload(reminder.id, reminder.ring_count, at),
        )
        try:
            timeout_id = self.schedule_timeout(reminder.id, at, reminder.ring_count)
        except Exception:
            self.queue.cancel(send_id)
            raise
        return send_id, timeout_id

    def schedule_timeout(self, reminder_id: str, at: datetime, ring_count: int) -> str:
        return self.queue.schedule(
            task_id_for(reminder_id, TIMEOUT, ring_count),
            at + self.grace,
            TIMEOUT,
            _payload(reminder_id, ring_count, at),
        )

    def cancel_tasks(self, *task_ids: str | None) -> None:
        """Best effort: unknown or already-fired tasks are ignored."""
        for task_id in dict.fromkeys(t for t in task_ids if t):
            self.queue.cancel(task_id)

    async def _arm_ring(self, reminder: Reminder) -> None:
        send_id, timeout_id = self.schedule_ring(reminder)
        try:
            attached = await self.store.update(
                reminder.id,
                {"send_task_id": send_id, "timeout_task_id": timeout_id},
                when=reminder.ring_guard(),
            )
        except ReminderNotFound:
            attached = None
        if attached is None:
            log.info("Reminder %s changed while scheduling, dropping tasks", reminder.id)
            self.cancel_tasks(send_id, timeout_id)
            return
        log.info(
            "Tasks scheduled for reminder %s: %s, %s", reminder.id, send_id, timeout_id
        )


# --- runtime wiring ---


@dataclass(slots=True)
class Runtime:
    scheduler: AsyncIOScheduler
    store: ReminderStore
    queue: DelayedTaskQueue
    reminders: ReminderScheduler
    machine: EscalationMachine


def setup_scheduler(
    dispatcher: Dispatcher,
    *,
    store: ReminderStore | None = None,
    state_file: Path | None = None,
) -> Runtime:
    """Build the queue, scheduler and escalation handlers on one AsyncIOScheduler."""
    from eldercare.notifications import Notifier
    from eldercare.scheduling.escalation import EscalationMachine

    scheduler = AsyncIOScheduler(timezone=TZ)
    store = store or ReminderStore()
    queue = DelayedTaskQueue(scheduler, state_file=state_file)
    reminders = ReminderScheduler(store, queue)
    machine = EscalationMachine(store, reminders, Notifier(dispatcher))

    store.subscribe(reminders.handle_event)
    queue.register(SEND, machine.on_send)
    queue.register(TIMEOUT, machine.on_timeout)

    @scheduler.scheduled_job(
        IntervalTrigger(seconds=POLL_SECONDS),
        id="sync_reminders",
        max_instances=1,
        coalesce=True,
    )
    async def sync_reminders() -> None:
        await store.refresh()

    return Runtime(
        scheduler=scheduler,
        store=store,
        queue=queue,
        reminders=reminders,
        machine=machine,
    )


async def start(runtime: Runtime) -> None:
    """Re-arm persisted tasks, catch up on store changes, then start firing."""
    runtime.queue.restore()
    await runtime.store.refresh()
    runtime.scheduler.start()
