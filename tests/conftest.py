"""Shared fixtures for eldercare tests."""

import os

os.environ.setdefault("ELDERCARE_TASK_SECRET", "test-secret")

import pytest


class FakeDispatcher:
    """Records every push instead of sending it."""

    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: list[dict] = []

    async def send(self, address, title, body, metadata, *, sound="default"):
        self.sent.append(
            {
                "address": address,
                "title": title,
                "body": body,
                "data": metadata,
                "sound": sound,
            }
        )
        return self.ok

    def to(self, address: str) -> list[dict]:
        return [m for m in self.sent if m["address"] == address]


MOM_TOKEN = "ExponentPushToken[mom]"
KID_TOKEN = "ExponentPushToken[kid]"


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    """Redirect all data file paths to a temp directory."""
    import eldercare.scheduling.queue as queue_mod
    import eldercare.scheduling.reminders as reminders_mod
    import eldercare.storage as storage_mod
    import eldercare.users as users_mod

    state_dir = tmp_path / "state"
    monkeypatch.setattr(storage_mod, "DATA_DIR", tmp_path)
    monkeypatch.setattr(storage_mod, "STATE_DIR", state_dir)
    monkeypatch.setattr(reminders_mod, "REMINDERS_DIR", tmp_path / "reminders")
    monkeypatch.setattr(queue_mod, "TASKS_FILE", state_dir / "tasks.json")
    monkeypatch.setattr(users_mod, "USERS_FILE", tmp_path / "users.json")
    monkeypatch.setattr(users_mod, "MISSED_FILE", state_dir / "missed_reminders.json")
    return tmp_path


@pytest.fixture()
def family(data_dir):
    """A parent ("mom") linked to a caregiver ("kid"), both with devices."""
    from eldercare.users import User, link_users, save_user

    save_user(User(id="mom", name="Margaret", nickname="Mom", push_token=MOM_TOKEN))
    save_user(User(id="kid", name="Sam", role="child", push_token=KID_TOKEN))
    link_users("mom", "kid")
    return data_dir


@pytest.fixture()
def dispatcher():
    return FakeDispatcher()


@pytest.fixture()
def runtime(data_dir, dispatcher):
    """Fully wired store/queue/scheduler/machine; the APScheduler is not started."""
    from eldercare.scheduling.scheduler import setup_scheduler

    return setup_scheduler(dispatcher)
