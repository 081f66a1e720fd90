"""Main entry point for the claude-notify CLI."""

import argparse
import asyncio
import logging
import sys

from ..config import load_config
from .client import NotifyClient
from . import commands


def main():
    """Main entry point for claude-notify CLI."""
    parser = argparse.ArgumentParser(
        prog="claude-notify",
        description="Claude Notify - mirror Claude Code sessions into one chat status message",
    )
    parser.add_argument("--config", help="Path to config.yaml (default: ~/.claude-notify/config.yaml)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # claude-notify hook [EVENT]
    hook_parser = subparsers.add_parser("hook", help="Handle a Claude Code hook (payload on stdin)")
    hook_parser.add_argument("event", nargs="?", help="Hook event name, used when the payload has none")

    # claude-notify serve
    subparsers.add_parser("serve", help="Run the hook server")

    # claude-notify status [PROJECT]
    status_parser = subparsers.add_parser("status", help="Show a project's status")
    status_parser.add_argument("project", nargs="?", help="Project name (default: current directory)")

    # claude-notify enable / disable
    subparsers.add_parser("enable", help="Enable notifications")
    subparsers.add_parser("disable", help="Disable notifications")

    args = parser.parse_args()

    if args.command == "serve":
        from ..main import main as server_main
        asyncio.run(server_main(args.config))
        sys.exit(0)

    # Hooks run inside the developer's session: keep output to warnings on stderr
    logging.basicConfig(
        level=logging.WARNING,
        format="claude-notify: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    config = load_config(args.config)
    client = NotifyClient(config.server_url)

    if args.command == "hook":
        sys.exit(commands.cmd_hook(config, client, args.event))
    elif args.command == "status":
        sys.exit(commands.cmd_status(config, client, args.project))
    elif args.command == "enable":
        sys.exit(commands.cmd_enable(config))
    elif args.command == "disable":
        sys.exit(commands.cmd_disable(config))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
