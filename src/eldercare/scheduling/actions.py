"""User actions on a ringing reminder, decoded from their wire names."""

from dataclasses import dataclass

from eldercare.errors import InvalidArgument


@dataclass(frozen=True, slots=True)
class Done:
    name = "done"


@dataclass(frozen=True, slots=True)
class Snooze:
    minutes: int | None = None
    name = "snooze"


@dataclass(frozen=True, slots=True)
class Acknowledge:
    """The parent saw the ring ("I'm on it") and wants to be checked on later."""

    minutes: int | None = None
    name = "im_on_it"


@dataclass(frozen=True, slots=True)
class Dismiss:
    name = "dismiss"


Action = Done | Snooze | Acknowledge | Dismiss

ACTION_NAMES = ("done", "snooze", "im_on_it", "dismiss")


def parse_action(name: str, minutes: int | None = None) -> Action:
    """Decode a wire action. Minutes only apply to snooze and im_on_it."""
    if minutes is not None and (
        isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0
    ):
        raise InvalidArgument(f"minutes must be a positive integer, got {minutes!r}")
    if name == "done":
        return Done()
    if name == "snooze":
        return Snooze(minutes)
    if name == "im_on_it":
        return Acknowledge(minutes)
    if name == "dismiss":
        return Dismiss()
    raise InvalidArgument(f"Unknown action: {name}")
