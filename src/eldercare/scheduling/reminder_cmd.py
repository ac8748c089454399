"""CLI handler for `eldercare reminder` subcommand."""

import argparse
import asyncio
import sys
from datetime import datetime

from eldercare.config import DEFAULT_FOLLOW_UP_MINUTES, MAX_HORIZON
from eldercare.scheduling.reminders import Reminder, ReminderStore
from eldercare.storage import TZ


def _fmt(r: Reminder) -> str:
    sched = f"at {r.scheduled_at[:16]}  [{r.status}, ring {r.ring_count}]"
    if r.miss_count:
        sched += f"  (missed {r.miss_count}x)"
    if r.snooze_count:
        sched += f"  (snoozed {r.snooze_count}x)"
    return sched


def run_reminder_command(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="eldercare reminder")
    sub = parser.add_subparsers(dest="action")

    add_p = sub.add_parser("add", help="Create a reminder for a parent")
    add_p.add_argument("--for", dest="for_user", required=True, help="Parent user ID")
    add_p.add_argument("--title", "-t", required=True, help="Reminder title")
    add_p.add_argument("--message", "-m", default="", help="Text shown with the ring")
    when = add_p.add_mutually_exclusive_group(required=True)
    when.add_argument("--delay", type=int, help="Ring in N minutes")
    when.add_argument("--at", help="Ring at an ISO datetime")
    add_p.add_argument(
        "--follow-up",
        type=int,
        default=DEFAULT_FOLLOW_UP_MINUTES,
        help="Minutes before the second ring",
    )
    add_p.add_argument("--created-by", default=None, help="Caregiver user ID")

    list_p = sub.add_parser("list", help="Show reminders")
    list_p.add_argument("--all", action="store_true", help="Include done and missed")

    show_p = sub.add_parser("show", help="Show one reminder in full")
    show_p.add_argument("id", help="Reminder ID")

    delete_p = sub.add_parser("delete", help="Delete a reminder by ID")
    delete_p.add_argument("id", help="Reminder ID")

    args = parser.parse_args(argv)

    if args.action == "add":
        _handle_add(args)
    elif args.action == "list":
        _handle_list(args.all)
    elif args.action == "show":
        _handle_show(args.id)
    elif args.action == "delete":
        _handle_delete(args.id)
    else:
        parser.print_help()
        sys.exit(1)


def _handle_add(args: argparse.Namespace) -> None:
    try:
        at = datetime.fromisoformat(args.at) if args.at else None
    except ValueError:
        print(f"invalid datetime: {args.at}")
        sys.exit(1)
    reminder = Reminder.new(
        args.for_user,
        args.title,
        at=at,
        delay_minutes=args.delay if at is None else None,
        message=args.message,
        created_by=args.created_by,
        follow_up_minutes=args.follow_up,
    )
    if reminder.scheduled_time > datetime.now(TZ) + MAX_HORIZON:
        print(f"cannot schedule more than {MAX_HORIZON.days} days ahead")
        sys.exit(1)
    asyncio.run(ReminderStore().create(reminder))
    print(f"scheduled {reminder.id}: {_fmt(reminder)} -- {reminder.title}")


def _handle_list(include_all: bool) -> None:
    reminders = asyncio.run(ReminderStore().list_reminders())
    if not include_all:
        reminders = [r for r in reminders if r.is_pending]
    if not reminders:
        print("no reminders" if include_all else "no pending reminders")
        return
    for r in sorted(reminders, key=lambda r: r.scheduled_at):
        print(f"  {r.id}  {r.for_user:10s}  {_fmt(r)}  {r.title}")


def _handle_show(reminder_id: str) -> None:
    reminder = asyncio.run(ReminderStore().get(reminder_id))
    if reminder is None:
        print(f"reminder {reminder_id} not found")
        sys.exit(1)
    for name in Reminder.__dataclass_fields__:
        value = getattr(reminder, name)
        if value not in (None, ""):
            print(f"{name:22s} {value}")


def _handle_delete(reminder_id: str) -> None:
    if asyncio.run(ReminderStore().delete(reminder_id)) is not None:
        print(f"deleted {reminder_id}")
    else:
        print(f"reminder {reminder_id} not found")
        sys.exit(1)
