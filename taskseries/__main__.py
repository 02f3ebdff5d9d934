"""Command-line entry for taskseries."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from . import run_server
from .config import load_settings
from .core.timezone_utils import parse_instant
from .exceptions import TaskSeriesError
from .logging_setup import configure_logging
from .planner import TaskPlanner

logger = logging.getLogger(__name__)


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the taskseries CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="taskseries",
        description="taskseries - recurring task planner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m taskseries serve                       # Start API on default port (8080)
  python -m taskseries serve --port 3000           # Start API on port 3000
  python -m taskseries init-db                     # Create the database schema
  python -m taskseries show-window --user u1 \\
      --start 2024-03-01T00:00:00Z --end 2024-04-01T00:00:00Z
        """,
    )
    parser.add_argument("--config", metavar="FILE", help="YAML settings file")

    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument(
        "--port",
        type=int,
        metavar="PORT",
        help="Port number for the API server (default: 8080, or TASKSERIES_SERVER_PORT)",
    )

    commands.add_parser("init-db", help="Create the database schema")

    show = commands.add_parser("show-window", help="Print materialized instances for a window")
    show.add_argument("--user", required=True, help="Owner whose tasks to show")
    show.add_argument("--start", required=True, help="Window start (ISO 8601)")
    show.add_argument("--end", required=True, help="Window end (ISO 8601)")

    return parser


async def _init_db(planner: TaskPlanner) -> None:
    await planner.initialize()
    print(f"Database ready at {planner.store.database_path}")


async def _show_window(planner: TaskPlanner, args: argparse.Namespace) -> None:
    start = parse_instant(args.start, field="start")
    end = parse_instant(args.end, field="end")
    window = await planner.materialize_window(args.user, start, end)
    payload = {
        "instances": [instance.model_dump(mode="json") for instance in window.instances],
        "cap_reached": window.cap_reached,
        "capped_task_ids": list(window.capped_task_ids),
    }
    print(json.dumps(payload, indent=2))


def main(argv: Optional[list[str]] = None) -> int:
    """Run the taskseries CLI.

    Returns:
        Process exit code
    """
    args = _create_parser().parse_args(argv)

    try:
        if args.command == "serve":
            run_server(args)
            return 0

        settings = load_settings(args.config)
        configure_logging(debug_mode=settings.debug, level_name=settings.log_level)
        planner = TaskPlanner(settings)
        if args.command == "init-db":
            asyncio.run(_init_db(planner))
        else:
            asyncio.run(_show_window(planner, args))
    except TaskSeriesError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
