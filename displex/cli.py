"""
displex command line.

Each pass command exits 0 when the pass ran to completion and 1 otherwise.
"""

import argparse
import asyncio
import logging
import sys

from displex import tasks
from displex.config import settings
from displex.db.migration_runner import run_migrations
from displex.db.session import close_engine
from displex.models.domain import PassReport
from displex.observability import get_logger, setup_logging, setup_tracing

logger = get_logger(__name__)


def _exit_code(report: PassReport) -> int:
    return 0 if report.completed else 1


async def _run_pass(command: str) -> PassReport:
    try:
        if command == "token-maintenance":
            return await tasks.run_token_maintenance()
        if command == "user-refresh":
            return await tasks.run_subscriber_sync()
        if command == "requests-upgrade":
            return await tasks.run_request_tier_sync()
        return await tasks.run_metadata_registration()
    finally:
        await close_engine()


async def _run_scheduler() -> None:
    scheduler = tasks.build_scheduler()
    scheduler.install_signal_handlers()
    try:
        await scheduler.run()
    finally:
        await close_engine()


def _serve() -> None:
    import uvicorn

    uvicorn.run(
        "displex.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="displex",
        description="Discord linked-role metadata for Plex subscribers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Refresh tokens nearing expiry (cron)
  displex token-maintenance

  # Push watched hours for every linked user
  displex user-refresh

  # Run both on their intervals until SIGTERM
  displex scheduler
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("server", help="Run the ops HTTP API")
    subparsers.add_parser("scheduler", help="Run maintenance and sync on their intervals")
    subparsers.add_parser("token-maintenance", help="Refresh, expire and purge stored tokens")
    subparsers.add_parser("user-refresh", help="Push role-connection metadata for linked users")
    subparsers.add_parser("requests-upgrade", help="Apply Overseerr request tiers")
    subparsers.add_parser("metadata", help="Register role-connection metadata with Discord")
    subparsers.add_parser("migrate", help="Upgrade the database schema to head")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    setup_tracing()

    if args.command == "server":
        _serve()
        return 0

    try:
        run_migrations()
    except RuntimeError as e:
        logger.error("startup_failed", command=args.command, error=str(e))
        return 1

    if args.command == "migrate":
        return 0

    if args.command == "scheduler":
        asyncio.run(_run_scheduler())
        return 0

    report = asyncio.run(_run_pass(args.command))
    logger.info("pass_finished", command=args.command, completed=report.completed)
    return _exit_code(report)


if __name__ == "__main__":
    sys.exit(main())
