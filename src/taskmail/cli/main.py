# src/taskmail/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs one command:
- serve          HTTP boundary (webhook + cron + notification routes)
- sweep          one sweep, prints the result as JSON
- run-scheduler  sweep loop until Ctrl+C
- prune          delete old cancelled reminders and cooldown records
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from ..config import get_settings
from ..logging_setup import setup_logging
from ..reminders.sweep import prune, run_sweep, run_sweep_loop
from .bootstrap import create_initial_state

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskmail", description="Task reminders and email replies.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    sub.add_parser("sweep", help="run one reminder/overdue sweep")

    loop = sub.add_parser("run-scheduler", help="sweep periodically until interrupted")
    loop.add_argument("--interval", type=float, default=None, help="seconds between sweeps")

    p = sub.add_parser("prune", help="delete old cancelled reminders and cooldown records")
    p.add_argument("--older-than-days", type=float, default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=getattr(settings, "data_dir", ".local/taskmail"), console_level=console_level)

    logger.info("Starting %s (%s)...", getattr(settings, "app_name", "taskmail"), args.command)
    state = create_initial_state(settings=settings)

    if args.command == "serve":
        from ..web.app import create_app

        app = create_app(state)
        app.run(host=args.host or settings.http_host, port=args.port or settings.http_port)
        return 0

    if args.command == "sweep":
        result = asyncio.run(run_sweep(state))
        print(json.dumps(result.to_dict()))
        return 0 if result.errors == 0 else 1

    if args.command == "run-scheduler":
        try:
            asyncio.run(run_sweep_loop(state, interval_seconds=args.interval))
        except KeyboardInterrupt:
            logger.info("Interrupted, bye.")
        return 0

    if args.command == "prune":
        instances, records = prune(state, older_than_days=args.older_than_days)
        print(json.dumps({"instances_deleted": instances, "overdue_records_deleted": records}))
        return 0

    raise ValueError(f"Unknown command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
