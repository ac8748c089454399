"""CLI handler for `eldercare user` subcommand."""

import argparse
import sys
from dataclasses import replace

from eldercare import users


def run_user_command(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="eldercare user")
    sub = parser.add_subparsers(dest="action")

    add_p = sub.add_parser("add", help="Add or replace a user record")
    add_p.add_argument("id", help="User ID")
    add_p.add_argument("--name", default="")
    add_p.add_argument("--nickname", default="")
    add_p.add_argument("--role", choices=["parent", "child"], default="parent")
    add_p.add_argument("--token", default=None, help="Expo push token")

    link_p = sub.add_parser("link", help="Connect a parent with a caregiver")
    link_p.add_argument("parent")
    link_p.add_argument("child")

    sub.add_parser("list", help="Show users")

    missed_p = sub.add_parser("missed", help="Show a parent's missed-reminder count")
    missed_p.add_argument("id", help="Parent user ID")
    missed_p.add_argument("--reset", action="store_true", help="Clear the count")

    args = parser.parse_args(argv)

    if args.action == "add":
        user = users.User(
            id=args.id,
            name=args.name,
            nickname=args.nickname,
            role=args.role,
            push_token=args.token,
        )
        existing = users.get_user(args.id)
        if existing is not None:
            user = replace(user, connected_to=existing.connected_to)
        users.save_user(user)
        print(f"saved {user.id} ({user.role})")
    elif args.action == "link":
        if not users.link_users(args.parent, args.child):
            print("both users must exist")
            sys.exit(1)
        print(f"linked {args.parent} <-> {args.child}")
    elif args.action == "list":
        for u in users.list_users():
            token = "token" if u.push_token else "no token"
            linked = f" -> {u.connected_to}" if u.connected_to else ""
            print(f"  {u.id:10s} {u.role:6s} {u.display_name} ({token}){linked}")
    elif args.action == "missed":
        if args.reset:
            users.reset_missed(args.id)
            print(f"reset missed count for {args.id}")
        else:
            print(users.missed_count(args.id))
    else:
        parser.print_help()
        sys.exit(1)
