"""Tests for reminder_cmd.py and user_cmd.py CLI handlers."""

import io
import sys

import pytest

from eldercare import users
from eldercare.main import _dispatch_subcommand
from eldercare.scheduling.reminder_cmd import run_reminder_command
from eldercare.user_cmd import run_user_command


def _capture_stdout(fn, *args):
    old = sys.stdout
    sys.stdout = buf = io.StringIO()
    try:
        fn(*args)
    finally:
        sys.stdout = old
    return buf.getvalue()


def test_reminder_add_and_list(data_dir):
    output = _capture_stdout(
        run_reminder_command,
        ["add", "--for", "mom", "-t", "Blood pressure pill", "--delay", "30"],
    )
    assert output.startswith("scheduled ")
    assert "Blood pressure pill" in output
    assert "ring 1" in output

    output = _capture_stdout(run_reminder_command, ["list"])
    assert "Blood pressure pill" in output
    assert "mom" in output


def test_reminder_add_at(data_dir):
    output = _capture_stdout(
        run_reminder_command,
        ["add", "--for", "mom", "-t", "Lunch", "--at", "2026-03-01T12:30", "-m", "Soup"],
    )
    reminder_id = output.split()[1].rstrip(":")

    output = _capture_stdout(run_reminder_command, ["show", reminder_id])
    assert "2026-03-01T12:30" in output
    assert "Soup" in output
    assert "pending" in output


def test_reminder_add_invalid_datetime(data_dir, capsys):
    with pytest.raises(SystemExit):
        run_reminder_command(["add", "--for", "mom", "-t", "x", "--at", "tomorrow"])
    assert "invalid datetime" in capsys.readouterr().out


def test_reminder_add_beyond_horizon_rejected(data_dir, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_reminder_command(
            ["add", "--for", "mom", "-t", "far", "--delay", str(60 * 24 * 45)]
        )

    assert exc_info.value.code == 1
    assert "cannot schedule more than 30 days ahead" in capsys.readouterr().out
    assert "no reminders" in _capture_stdout(run_reminder_command, ["list", "--all"])


def test_reminder_add_inside_horizon(data_dir):
    output = _capture_stdout(
        run_reminder_command,
        ["add", "--for", "mom", "-t", "soon", "--delay", str(60 * 24 * 29)],
    )

    assert output.startswith("scheduled ")


def test_reminder_add_requires_when(data_dir):
    with pytest.raises(SystemExit):
        run_reminder_command(["add", "--for", "mom", "-t", "x"])


def test_reminder_list_empty(data_dir):
    assert "no pending reminders" in _capture_stdout(run_reminder_command, ["list"])
    assert "no reminders" in _capture_stdout(run_reminder_command, ["list", "--all"])


def test_reminder_delete(data_dir):
    output = _capture_stdout(
        run_reminder_command, ["add", "--for", "mom", "-t", "to delete", "--delay", "5"]
    )
    reminder_id = output.split()[1].rstrip(":")

    output = _capture_stdout(run_reminder_command, ["delete", reminder_id])
    assert f"deleted {reminder_id}" in output

    output = _capture_stdout(run_reminder_command, ["list"])
    assert "no pending reminders" in output


def test_reminder_delete_unknown(data_dir, capsys):
    with pytest.raises(SystemExit):
        run_reminder_command(["delete", "ghost"])
    assert "not found" in capsys.readouterr().out


def test_user_add_link_list(data_dir):
    _capture_stdout(
        run_user_command,
        ["add", "mom", "--name", "Margaret", "--nickname", "Mom", "--token", "ExponentPushToken[m]"],
    )
    _capture_stdout(run_user_command, ["add", "kid", "--name", "Sam", "--role", "child"])

    output = _capture_stdout(run_user_command, ["link", "mom", "kid"])
    assert "linked mom <-> kid" in output

    output = _capture_stdout(run_user_command, ["list"])
    assert "Mom (token) -> kid" in output
    assert "Sam (no token) -> mom" in output


def test_user_readd_keeps_link(data_dir):
    _capture_stdout(run_user_command, ["add", "mom"])
    _capture_stdout(run_user_command, ["add", "kid", "--role", "child"])
    _capture_stdout(run_user_command, ["link", "mom", "kid"])

    _capture_stdout(run_user_command, ["add", "mom", "--token", "ExponentPushToken[new]"])

    mom = users.get_user("mom")
    assert mom.connected_to == "kid"
    assert mom.push_token == "ExponentPushToken[new]"


def test_user_link_unknown(data_dir, capsys):
    with pytest.raises(SystemExit):
        run_user_command(["link", "mom", "ghost"])
    assert "both users must exist" in capsys.readouterr().out


def test_user_missed(data_dir):
    users.increment_missed("mom")
    users.increment_missed("mom")

    assert _capture_stdout(run_user_command, ["missed", "mom"]).strip() == "2"
    assert "reset" in _capture_stdout(run_user_command, ["missed", "mom", "--reset"])
    assert _capture_stdout(run_user_command, ["missed", "mom"]).strip() == "0"


def test_dispatch_help(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["eldercare", "help"])

    output = _capture_stdout(_dispatch_subcommand)

    assert "eldercare reminder add" in output


def test_dispatch_routes_reminder(data_dir, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["eldercare", "reminder", "list"])

    assert "no pending reminders" in _capture_stdout(_dispatch_subcommand)


def test_dispatch_no_subcommand(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["eldercare"])

    assert _dispatch_subcommand() is False
