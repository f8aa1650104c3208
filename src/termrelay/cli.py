"""Command-line interface for termrelay.

Provides the main entry point for running the relay server, listing the
shells available on this host, and a minimal line-oriented client.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="termrelay",
        description="Remote interactive shell relay",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/termrelay.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the relay server")
    serve_parser.add_argument("--host", type=str, default=None, help="Override server.host")
    serve_parser.add_argument("--port", type=int, default=None, help="Override server.port")

    subparsers.add_parser("shells", help="List shell kinds available on this host")
    subparsers.add_parser("sessions", help="List sessions on a running server")

    attach_parser = subparsers.add_parser(
        "attach", help="Attach to a session; stdin lines are sent as commands"
    )
    attach_parser.add_argument(
        "session_id", nargs="?", default=None,
        help="Session to attach to (default: create a new one)",
    )
    attach_parser.add_argument(
        "--after", type=int, default=None,
        help="Replay output after this sequence number",
    )

    return parser.parse_args(argv)


def _list_shells() -> None:
    from termrelay.domain.errors import ShellUnavailable
    from termrelay.shell.factory import available_shell_kinds, default_shell_kind

    kinds = available_shell_kinds()
    if not kinds:
        print("No supported shells found on this host")
        return
    try:
        default = default_shell_kind()
    except ShellUnavailable:
        default = None
    for kind in kinds:
        marker = " (default)" if kind is default else ""
        print(f"{kind.value}{marker}")


async def _list_sessions(settings) -> None:
    from termrelay.client.rest import RelayClient

    token = settings.client.token.get_secret_value() or None
    async with RelayClient(settings.client.base_url, token, settings.client.timeout) as client:
        sessions = await client.list_sessions()
    if not sessions:
        print("No active sessions")
        return
    for s in sessions:
        print(
            f"{s.session_id}  {s.name:<20} {s.shell_kind.value:<10} "
            f"{s.status.value:<10} {s.connection.value:<10} seq={s.output_sequence}"
        )


async def _attach(settings, session_id: str | None, after: int | None) -> None:
    from termrelay.client.rest import RelayClient
    from termrelay.client.stream import SessionStream
    from termrelay.domain.models import ErrorMessage, OutputMessage, ProcessEndedMessage

    if session_id is None:
        token = settings.client.token.get_secret_value() or None
        async with RelayClient(settings.client.base_url, token, settings.client.timeout) as client:
            session = await client.create_session()
        session_id = session.session_id
        print(f"Created session {session_id} ({session.shell_kind.value})", file=sys.stderr)

    loop = asyncio.get_running_loop()
    async with SessionStream.from_config(
        settings.client, session_id, last_seen_sequence=after
    ) as stream:

        async def pump_stdin() -> None:
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    return
                await stream.execute_command(line.rstrip("\n"))

        stdin_task = asyncio.create_task(pump_stdin())
        try:
            async for message in stream:
                if isinstance(message, OutputMessage):
                    sys.stdout.write(message.data)
                    sys.stdout.flush()
                elif isinstance(message, ProcessEndedMessage):
                    print(f"\n[process ended at sequence {message.sequence}]", file=sys.stderr)
                elif isinstance(message, ErrorMessage):
                    print(f"\n[{message.code}] {message.message}", file=sys.stderr)
        finally:
            stdin_task.cancel()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the termrelay CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from termrelay.config.settings import load_settings
    from termrelay.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        import uvicorn

        from termrelay.server.app import create_app

        if args.host:
            settings.server.host = args.host
        if args.port:
            settings.server.port = args.port
        logger.info("Starting relay server on %s:%d", settings.server.host, settings.server.port)
        app = create_app(settings)
        uvicorn.run(
            app,
            host=settings.server.host,
            port=settings.server.port,
            log_config=None,
        )

    elif args.command == "shells":
        _list_shells()

    elif args.command == "sessions":
        asyncio.run(_list_sessions(settings))

    elif args.command == "attach":
        try:
            asyncio.run(_attach(settings, args.session_id, args.after))
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
