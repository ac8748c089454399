"""Tests for scheduling/queue.py -- delayed tasks, retries, restore."""

import json
import re
from dataclasses import asdict, replace
from datetime import datetime, timedelta

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from eldercare.errors import HorizonExceeded
from eldercare.scheduling.queue import DelayedTaskQueue, ScheduledTask, task_id_for
from eldercare.storage import TZ


def _queue(data_dir, **kwargs):
    q = DelayedTaskQueue(
        AsyncIOScheduler(timezone=TZ), state_file=data_dir / "tasks.json", **kwargs
    )
    calls: list[dict] = []

    async def record(payload):
        calls.append(payload)

    q.register("send", record)
    return q, calls


def test_task_id_shape():
    task_id = task_id_for("abc123", "send", 1)

    assert re.fullmatch(r"abc123-send-ring1-[0-9a-f]{8}", task_id)
    assert task_id != task_id_for("abc123", "send", 1)


def test_schedule_persists_and_arms(data_dir):
    q, _ = _queue(data_dir)
    at = datetime.now(TZ) + timedelta(minutes=5)

    q.schedule("t1", at, "send", {"reminder_id": "r1"})

    task = q.get("t1")
    assert task is not None
    assert datetime.fromisoformat(task.fire_at) == at
    assert task.attempts == 0
    assert q._scheduler.get_job("t1") is not None
    saved = json.loads((data_dir / "tasks.json").read_text())
    assert saved[0]["id"] == "t1"
    assert saved[0]["payload"] == {"reminder_id": "r1"}


def test_schedule_past_time_is_clamped(data_dir):
    q, _ = _queue(data_dir)
    before = datetime.now(TZ)

    q.schedule("t1", before - timedelta(hours=1), "send", {})

    fire_at = datetime.fromisoformat(q.get("t1").fire_at)
    assert before < fire_at <= datetime.now(TZ) + timedelta(seconds=5)


def test_schedule_beyond_horizon_raises(data_dir):
    q, _ = _queue(data_dir)

    with pytest.raises(HorizonExceeded):
        q.schedule("t1", datetime.now(TZ) + timedelta(days=31), "send", {})

    assert q.get("t1") is None
    assert not (data_dir / "tasks.json").exists()


def test_schedule_just_inside_horizon(data_dir):
    q, _ = _queue(data_dir)

    q.schedule("t1", datetime.now(TZ) + timedelta(days=29, hours=23), "send", {})

    assert q.get("t1") is not None


def test_schedule_duplicate_id_is_noop(data_dir):
    q, _ = _queue(data_dir)
    first = datetime.now(TZ) + timedelta(minutes=5)

    q.schedule("t1", first, "send", {"n": 1})
    returned = q.schedule("t1", first + timedelta(hours=1), "send", {"n": 2})

    assert returned == "t1"
    assert q.get("t1").payload == {"n": 1}
    assert len(q.pending()) == 1


def test_schedule_unknown_target_raises(data_dir):
    q, _ = _queue(data_dir)

    with pytest.raises(ValueError, match="No handler"):
        q.schedule("t1", datetime.now(TZ) + timedelta(minutes=1), "nope", {})


def test_cancel(data_dir):
    q, _ = _queue(data_dir)
    q.schedule("t1", datetime.now(TZ) + timedelta(minutes=5), "send", {})

    assert q.cancel("t1") is True
    assert q.get("t1") is None
    assert q._scheduler.get_job("t1") is None
    assert q.cancel("t1") is False
    assert q.cancel(None) is False
    assert q.cancel("never-existed") is False


def test_pending_sorted_and_filtered(data_dir):
    q, _ = _queue(data_dir)
    now = datetime.now(TZ)
    q.schedule("r1-send-ring1-aaaa", now + timedelta(minutes=10), "send", {})
    q.schedule("r1-timeout-ring1-bbbb", now + timedelta(minutes=12), "send", {})
    q.schedule("r2-send-ring1-cccc", now + timedelta(minutes=1), "send", {})

    assert [t.id for t in q.pending()] == [
        "r2-send-ring1-cccc",
        "r1-send-ring1-aaaa",
        "r1-timeout-ring1-bbbb",
    ]
    assert [t.id for t in q.pending("r1-")] == [
        "r1-send-ring1-aaaa",
        "r1-timeout-ring1-bbbb",
    ]


@pytest.mark.asyncio
async def test_run_task_invokes_handler_once(data_dir):
    q, calls = _queue(data_dir)
    q.schedule("t1", datetime.now(TZ) + timedelta(minutes=5), "send", {"x": 1})

    assert await q.run_task("t1") is True
    assert calls == [{"x": 1}]
    assert q.get("t1") is None
    assert json.loads((data_dir / "tasks.json").read_text()) == []

    assert await q.run_task("t1") is False
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_run_task_failure_retries_then_drops(data_dir):
    q, _ = _queue(data_dir, max_attempts=3)
    attempts: list[dict] = []

    async def boom(payload):
        attempts.append(payload)
        raise RuntimeError("handler crashed")

    q.register("flaky", boom)
    q.schedule("t1", datetime.now(TZ) + timedelta(minutes=5), "flaky", {})

    assert await q.run_task("t1") is False
    retry = q.get("t1")
    assert retry is not None
    assert retry.attempts == 1
    assert datetime.fromisoformat(retry.fire_at) > datetime.now(TZ)

    assert await q.run_task("t1") is False
    assert q.get("t1").attempts == 2

    assert await q.run_task("t1") is False
    assert q.get("t1") is None
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_run_task_cancelled_during_failure_not_retried(data_dir):
    q, _ = _queue(data_dir)

    async def cancel_then_fail(payload):
        q.cancel("t1")
        raise RuntimeError("late failure")

    q.register("self-cancel", cancel_then_fail)
    q.schedule("t1", datetime.now(TZ) + timedelta(minutes=5), "self-cancel", {})

    assert await q.run_task("t1") is False
    assert q.get("t1") is None


@pytest.mark.asyncio
async def test_restore_rearms_saved_tasks(data_dir):
    q, calls = _queue(data_dir)
    q.schedule("t1", datetime.now(TZ) - timedelta(minutes=5), "send", {"n": 1})
    q.schedule("t2", datetime.now(TZ) + timedelta(days=2), "send", {"n": 2})

    fresh, fresh_calls = _queue(data_dir)
    assert fresh.restore() == 2

    assert {t.id for t in fresh.pending()} == {"t1", "t2"}
    assert fresh._scheduler.get_job("t2") is not None
    assert await fresh.run_task("t1") is True
    assert fresh_calls == [{"n": 1}]
    assert calls == []


def test_restore_skips_unknown_target_and_corrupt_records(data_dir):
    now = datetime.now(TZ)
    good = ScheduledTask(
        id="t1",
        target="send",
        payload={},
        fire_at=(now + timedelta(minutes=1)).isoformat(),
        created_at=now.isoformat(),
    )
    orphan = replace(good, id="t2", target="gone")
    (data_dir / "tasks.json").write_text(
        json.dumps([asdict(good), asdict(orphan), {"id": "t3"}])
    )
    q, _ = _queue(data_dir)

    assert q.restore() == 1
    assert [t.id for t in q.pending()] == ["t1"]


def test_restore_missing_file(data_dir):
    q, _ = _queue(data_dir)

    assert q.restore() == 0
    assert q.pending() == []
