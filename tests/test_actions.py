"""Tests for scheduling/actions.py."""

import pytest

from eldercare.errors import InvalidArgument
from eldercare.scheduling.actions import (
    ACTION_NAMES,
    Acknowledge,
    Dismiss,
    Done,
    Snooze,
    parse_action,
)


def test_parse_each_action():
    assert parse_action("done") == Done()
    assert parse_action("snooze") == Snooze()
    assert parse_action("snooze", 15) == Snooze(15)
    assert parse_action("im_on_it", 5) == Acknowledge(5)
    assert parse_action("dismiss") == Dismiss()


def test_wire_names_match():
    assert [parse_action(n).name for n in ACTION_NAMES] == list(ACTION_NAMES)


def test_unknown_action():
    with pytest.raises(InvalidArgument, match="Unknown action"):
        parse_action("explode")


@pytest.mark.parametrize("minutes", [0, -5, 2.5, "10", True])
def test_invalid_minutes(minutes):
    with pytest.raises(InvalidArgument, match="minutes"):
        parse_action("snooze", minutes)
