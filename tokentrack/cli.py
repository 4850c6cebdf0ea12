#!/usr/bin/env python3
"""Command line entry point.

Usage:
  tokentrack start                 # headless tracker
  tokentrack start --debug         # also log tracker state every 10 seconds
  tokentrack serve --port 8000     # reporting API with the tracker in its lifespan
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from tokentrack import config
from tokentrack.observability import initialize as initialize_observability, shutdown as shutdown_observability
from tokentrack.tracking.service import TrackerService

logger = logging.getLogger("tokentrack")

_DEBUG_STATE_SECONDS = 10


def _build_service(args: argparse.Namespace) -> TrackerService:
    return TrackerService(
        state_path=Path(args.state) if args.state else None,
        db_path=Path(args.db) if args.db else None,
        delta_policy=args.delta_policy,
        seed_from_store=True if args.seed_from_store else None,
        status_log_seconds=_DEBUG_STATE_SECONDS if args.debug else None,
    )


async def _run_tracker(args: argparse.Namespace) -> int:
    service = _build_service(args)
    initialize_observability()

    stop_tasks: list[asyncio.Task] = []

    def _request_stop() -> None:
        if not stop_tasks:
            stop_tasks.append(asyncio.create_task(service.stop()))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    await service.start()
    await service.wait_stopped()
    if stop_tasks:
        await stop_tasks[0]
    shutdown_observability()
    if service.tripped:
        logger.error("Tracker stopped by circuit breaker")
        return 1
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from tokentrack.main import app

    app.state.tracker = _build_service(args)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


def _add_tracker_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state", default="", help=f"Claude state file (default: {config.STATE_PATH})")
    parser.add_argument("--db", default="", help=f"SQLite database path (default: {config.DB_PATH})")
    parser.add_argument(
        "--delta-policy",
        choices=["raw", "clamped"],
        default=None,
        help="How counter decreases are recorded (default: %s)" % config.DELTA_POLICY,
    )
    parser.add_argument(
        "--seed-from-store",
        action="store_true",
        help="Use the last stored snapshot per session as the starting baseline",
    )
    parser.add_argument("--debug", action="store_true", help="Log tracker state periodically")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tokentrack",
        description="Track Claude Code token usage as per-conversation deltas",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start the headless tracker")
    _add_tracker_options(start)

    serve = sub.add_parser("serve", help="Run the reporting API with the tracker")
    _add_tracker_options(serve)
    serve.add_argument("--host", default=config.HOST)
    serve.add_argument("--port", type=int, default=config.PORT)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.debug:
        logging.getLogger("tokentrack").setLevel(logging.DEBUG)

    if args.command == "serve":
        return _serve(args)
    return asyncio.run(_run_tracker(args))


if __name__ == "__main__":
    raise SystemExit(main())
