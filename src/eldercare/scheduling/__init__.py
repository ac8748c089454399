"""Scheduling: reminders, the delayed task queue, and escalation."""

from eldercare.scheduling.actions import (
    Acknowledge,
    Action,
    Dismiss,
    Done,
    Snooze,
    parse_action,
)
from eldercare.scheduling.escalation import ActionResult, EscalationMachine
from eldercare.scheduling.queue import DelayedTaskQueue, ScheduledTask
from eldercare.scheduling.reminders import (
    Created,
    Deleted,
    Reminder,
    ReminderEvent,
    ReminderStore,
    Updated,
)
from eldercare.scheduling.scheduler import ReminderScheduler, setup_scheduler

__all__ = [
    "Acknowledge",
    "Action",
    "ActionResult",
    "Created",
    "DelayedTaskQueue",
    "Deleted",
    "Dismiss",
    "Done",
    "EscalationMachine",
    "Reminder",
    "ReminderEvent",
    "ReminderScheduler",
    "ReminderStore",
    "ScheduledTask",
    "Snooze",
    "Updated",
    "parse_action",
    "setup_scheduler",
]
