"""Command-line interface for sessionbridge.

Starts the broker server, or talks to a running one to create sessions,
run and cancel commands, and list or close sessions.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="sessionbridge",
        description="Concurrent shell session broker",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/sessionbridge.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--url", type=str, default=None,
        help="Server URL for client commands (default: http://localhost:<port>)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("serve", help="Start the HTTP/WebSocket server")

    create_parser = subparsers.add_parser("create", help="Create a session")
    create_parser.add_argument("--kind", choices=["local", "remote"], default="local")
    create_parser.add_argument("--target", type=str, default=None, help="Shell path or remote host")
    create_parser.add_argument("--label", type=str, default=None)
    create_parser.add_argument("--username", type=str, default=None)
    create_parser.add_argument("--password", type=str, default=None)

    exec_parser = subparsers.add_parser("exec", help="Run a command in a session")
    exec_parser.add_argument("session_id")
    exec_parser.add_argument("cmd", help="Command text")
    exec_parser.add_argument("--timeout", type=int, default=None, help="Timeout in milliseconds")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel the running command of a session")
    cancel_parser.add_argument("session_id")

    subparsers.add_parser("list", help="List sessions")

    close_parser = subparsers.add_parser("close", help="Close a session (or all with --all)")
    close_parser.add_argument("session_id", nargs="?", default=None)
    close_parser.add_argument("--all", action="store_true", help="Close every session")

    return parser.parse_args(argv)


async def _client_command(base_url: str, args: argparse.Namespace) -> int:
    """Run one client subcommand and print the JSON reply."""
    from sessionbridge.client import BridgeClient, BridgeClientError

    try:
        async with BridgeClient(base_url=base_url) as client:
            if args.command == "create":
                credentials = None
                if args.username:
                    credentials = {"username": args.username, "password": args.password or ""}
                reply = await client.create_session(
                    kind=args.kind, target=args.target, label=args.label, credentials=credentials,
                )
            elif args.command == "exec":
                reply = await client.exec(args.session_id, args.cmd, args.timeout)
            elif args.command == "cancel":
                reply = await client.cancel(args.session_id)
            elif args.command == "list":
                reply = await client.list_sessions()
            elif args.all:
                reply = await client.close_all()
            elif args.session_id:
                reply = await client.close_session(args.session_id)
            else:
                print("close: give a session id or --all", file=sys.stderr)
                return 2
    except BridgeClientError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "exec" and reply.get("success"):
        print(reply.get("output", ""))
    else:
        print(json.dumps(reply, indent=2))
    return 0 if reply.get("success", True) else 1


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the sessionbridge CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from sessionbridge.config.settings import load_settings
    from sessionbridge.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        logger.info("Starting %s", settings.server.service_name)
        from sessionbridge.endpoint.server import create_app
        import uvicorn
        app = create_app(settings)
        uvicorn.run(
            app,
            host=settings.server.host,
            port=settings.server.port,
        )
        return

    base_url = args.url or f"http://localhost:{settings.server.port}"
    sys.exit(asyncio.run(_client_command(base_url, args)))


if __name__ == "__main__":
    main()
