"""Command-line entry point: schema setup and the periodic sweep."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from gamevault.config import settings, validate_settings
from gamevault.core.notifications import drain_notifications
from gamevault.database import Database
from gamevault.services import scheduler_service

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _ensure_sqlite_dir(url: str) -> None:
    # sqlite+aiosqlite:///./data/gamevault.db -> ./data
    if url.startswith("sqlite") and ":///" in url and ":memory:" not in url:
        Path(url.split(":///", 1)[1]).parent.mkdir(parents=True, exist_ok=True)


async def _init_db(db: Database) -> None:
    await db.create_all()
    print("Database tables created.")


async def _sweep(db: Database) -> None:
    report = await scheduler_service.run_sweep(db.session_factory)
    print(json.dumps(report.to_dict(), indent=2))


async def _run_scheduler(db: Database, interval: float | None) -> None:
    logger.info("Scheduler started (interval=%ss)", interval or settings.sweep_interval_seconds)
    await scheduler_service.sweep_loop(db.session_factory, interval, initial_delay=0)


async def _run(args: argparse.Namespace) -> None:
    _ensure_sqlite_dir(settings.database_url)
    db = Database(settings.database_url)
    try:
        if args.command == "init-db":
            await _init_db(db)
        elif args.command == "sweep":
            await _sweep(db)
        elif args.command == "run-scheduler":
            await _run_scheduler(db, args.interval)
    finally:
        await drain_notifications()
        await db.dispose()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Escrow workflow maintenance commands.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create all tables.")
    sub.add_parser("sweep", help="Run one maintenance sweep and print the report as JSON.")
    scheduler = sub.add_parser("run-scheduler", help="Run the maintenance sweep forever.")
    scheduler.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps (defaults to SWEEP_INTERVAL_SECONDS).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    _setup_logging()
    validate_settings(settings)
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
