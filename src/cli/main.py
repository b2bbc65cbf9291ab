"""Main entry point for the claude-relay-hook CLI."""

import argparse
import sys

from .client import RelayClient
from . import commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-relay-hook",
        description="Claude Code hooks and session control for claude-relay",
    )
    parser.add_argument("--url", help="Relay server URL (default: $CLAUDE_RELAY_URL or http://127.0.0.1:8421)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("session-start", help="SessionStart hook: register this session (reads hook JSON on stdin)")

    stop_parser = subparsers.add_parser("stop", help="Stop/Notification hook: report an event (reads hook JSON on stdin)")
    stop_parser.add_argument("--event", help="Event name (default: hook_event_name from the payload, or Stop)")

    notify_parser = subparsers.add_parser("notify", help="Enable Telegram notifications for a session")
    notify_parser.add_argument("session_id", help="Claude session id")
    notify_parser.add_argument("--label", help="Label shown in notifications")

    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.add_argument("--active", action="store_true", help="Only running, unexpired sessions")
    sessions_parser.add_argument("--notify", action="store_true", help="Only sessions with notifications enabled")

    subparsers.add_parser("cleanup", help="Remove expired sessions and tokens")

    return parser


def main(argv=None):
    """Main entry point for claude-relay-hook."""
    parser = build_parser()
    args = parser.parse_args(argv)

    client = RelayClient(api_url=args.url)

    if args.command == "session-start":
        sys.exit(commands.cmd_session_start(client))
    elif args.command == "stop":
        sys.exit(commands.cmd_stop(client, event=args.event))
    elif args.command == "notify":
        sys.exit(commands.cmd_notify(client, args.session_id, args.label))
    elif args.command == "sessions":
        sys.exit(commands.cmd_sessions(client, args.active, args.notify))
    elif args.command == "cleanup":
        sys.exit(commands.cmd_cleanup(client))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
