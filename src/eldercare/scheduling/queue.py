"""Delayed task queue on top of APScheduler.

Each task is a (target, payload, fire_at) triple persisted to tasks.json and
armed as a one-shot DateTrigger job. At fire time the handler registered for
the target is awaited. Delivery is at-least-once: a task stays on disk until
its handler returns, failed handlers are retried, and `restore()` re-arms
everything that was outstanding when the process stopped.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from eldercare.config import CLAMP_EPSILON, MAX_ATTEMPTS, MAX_HORIZON, RETRY_DELAY
from eldercare.errors import HorizonExceeded
from eldercare.storage import STATE_DIR, TZ, read_json, write_json

TASKS_FILE: Path = STATE_DIR / "tasks.json"

SEND = "send"
TIMEOUT = "timeout"

log = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    id: str
    target: str
    payload: dict[str, Any]
    fire_at: str  # ISO datetime
    created_at: str  # ISO datetime
    attempts: int = 0


def task_id_for(reminder_id: str, kind: str, ring_count: int) -> str:
    """Unique per scheduling, so a rescheduled ring never reuses an old id."""
    return f"{reminder_id}-{kind}-ring{ring_count}-{uuid4().hex[:8]}"


class DelayedTaskQueue:
    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        *,
        state_file: Path | None = None,
        horizon: timedelta = MAX_HORIZON,
        clamp: timedelta = CLAMP_EPSILON,
        retry_delay: timedelta = RETRY_DELAY,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self._scheduler = scheduler
        self._state_file = state_file or TASKS_FILE
        self._horizon = horizon
        self._clamp = clamp
        self._retry_delay = retry_delay
        self._max_attempts = max_attempts
        self._tasks: dict[str, ScheduledTask] = {}
        self._handlers: dict[str, Handler] = {}

    def register(self, target: str, handler: Handler) -> None:
        self._handlers[target] = handler

    def schedule(
        self,
        task_id: str,
        fire_at: datetime,
        target: str,
        payload: dict[str, Any],
    ) -> str:
        """Arm a task. Past times fire shortly; a duplicate id is a no-op."""
        if target not in self._handlers:
            raise ValueError(f"No handler registered for target: {target}")
        if task_id in self._tasks:
            log.warning("Task %s already exists, skipping", task_id)
            return task_id

        now = datetime.now(TZ)
        if fire_at <= now:
            fire_at = now + self._clamp
        if fire_at > now + self._horizon:
            raise HorizonExceeded(
                f"Cannot schedule task more than {self._horizon.days} days in "
                f"advance. Requested: {fire_at.isoformat()}"
            )

        task = ScheduledTask(
            id=task_id,
            target=target,
            payload=dict(payload),
            fire_at=fire_at.isoformat(),
            created_at=now.isoformat(),
        )
        self._tasks[task_id] = task
        self._save()
        self._arm(task)
        log.info("Task %s scheduled for %s", task_id, task.fire_at)
        return task_id

    def cancel(self, task_id: str | None) -> bool:
        """False when the task is unknown or already fired."""
        if not task_id:
            return False
        task = self._tasks.pop(task_id, None)
        if task is None:
            log.info("Task %s not found (may have already fired)", task_id)
            return False
        self._save()
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(task_id)
        log.info("Task %s cancelled", task_id)
        return True

    def get(self, task_id: str) -> ScheduledTask | None:
        return self._tasks.get(task_id)

    def pending(self, prefix: str | None = None) -> list[ScheduledTask]:
        """Outstanding tasks by fire time, optionally only ids with `prefix`."""
        tasks = [
            t for t in self._tasks.values() if prefix is None or t.id.startswith(prefix)
        ]
        return sorted(tasks, key=lambda t: t.fire_at)

    async def run_task(self, task_id: str) -> bool:
        """Invoke the handler for an outstanding task. True on success."""
        task = self._tasks.get(task_id)
        if task is None:
            log.info("Task %s no longer outstanding, skipping", task_id)
            return False

        handler = self._handlers[task.target]
        try:
            await handler(dict(task.payload))
        except Exception:
            if task_id not in self._tasks:
                log.exception("Task %s failed after being cancelled", task_id)
                return False
            attempts = task.attempts + 1
            if attempts >= self._max_attempts:
                log.exception("Task %s failed %d times, dropping", task_id, attempts)
                self._tasks.pop(task_id, None)
                self._save()
                return False
            log.exception(
                "Task %s failed (attempt %d), retrying in %s",
                task_id,
                attempts,
                self._retry_delay,
            )
            retry_at = datetime.now(TZ) + self._retry_delay
            retry = replace(task, attempts=attempts, fire_at=retry_at.isoformat())
            self._tasks[task_id] = retry
            self._save()
            self._arm(retry)
            return False

        if self._tasks.pop(task_id, None) is not None:
            self._save()
        return True

    def restore(self) -> int:
        """Reload outstanding tasks from disk and re-arm them."""
        restored = 0
        for data in read_json(self._state_file, []):
            try:
                task = ScheduledTask(**data)
            except TypeError:
                log.warning("Skipping corrupt task record: %s", data)
                continue
            if task.target not in self._handlers:
                log.warning("Task %s has unknown target %s", task.id, task.target)
                continue
            self._tasks[task.id] = task
            self._arm(task)
            restored += 1
        if restored:
            log.info("Restored %d outstanding tasks", restored)
        return restored

    def _arm(self, task: ScheduledTask) -> None:
        run_at = datetime.fromisoformat(task.fire_at)
        now = datetime.now(TZ)
        if run_at <= now:
            run_at = now + self._clamp
        # No misfire limit: a late event loop still delivers the task
        self._scheduler.add_job(
            self.run_task,
            DateTrigger(run_date=run_at),
            args=[task.id],
            id=task.id,
            replace_existing=True,
            misfire_grace_time=None,
        )

    def _save(self) -> None:
        write_json(self._state_file, [asdict(t) for t in self._tasks.values()])
