"""CLI entry point for PolyBuddy.

Usage:
    python -m polybuddy [options]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.config
import sys
from typing import NoReturn

from pydantic import ValidationError

from polybuddy import __version__
from polybuddy.config import Settings, clear_settings_cache, get_settings
from polybuddy.pipeline import Pipeline, link_markets
from polybuddy.shutdown import GracefulShutdown
from polybuddy.storage.database import DatabaseManager

# Application info
APP_NAME = "PolyBuddy Alerts"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="polybuddy",
        description="Sync prediction markets, derive analytics and send Telegram alerts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m polybuddy                      Run sync, alerts and bot
  python -m polybuddy --sync-once          Run one sync pass (and alert pass) and exit
  python -m polybuddy --init-db            Create database tables and exit
  python -m polybuddy --link will-x-happen KXTICKER  Link markets across platforms
  python -m polybuddy --dry-run            Log alerts instead of sending them
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level (default: from settings)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log alerts instead of sending them",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Override health check port (default: from settings)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--sync-once",
        action="store_true",
        help="Run a single sync pass followed by an alert pass, then exit",
    )
    mode.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables and exit",
    )
    mode.add_argument(
        "--link",
        nargs=2,
        metavar=("POLYMARKET_ID", "KALSHI_TICKER"),
        default=None,
        help="Link a Polymarket market with a Kalshi market and exit",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level string (DEBUG, INFO, etc.)
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if level == "DEBUG" else "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        # Quieter logging for noisy libraries
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "aiohttp.access": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_banner() -> None:
    """Print the application startup banner."""
    banner = f"""
╔══════════════════════════════════════════════════════════════╗
║                                                              ║
║   {APP_NAME:^56}   ║
║   {"v" + APP_VERSION:^56}   ║
║                                                              ║
╚══════════════════════════════════════════════════════════════╝
"""
    print(banner)


def print_config_summary(settings: Settings, dry_run: bool) -> None:
    """Print a summary of the configuration."""
    summary = settings.redacted_summary()
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  Redis: {summary['redis_url']}")
    print(f"  Gamma API: {summary['gamma_url']}")
    print(f"  Sync Interval: {summary['sync_interval_seconds']}s")
    print(f"  Log Level: {summary['log_level']}")
    print(f"  Health Port: {summary['health_port']}")
    print(f"  Dry Run: {dry_run}")
    print(f"  Kalshi: {'enabled' if summary['kalshi_enabled'] == 'True' else 'disabled'}")
    print(f"  Telegram: {'enabled' if summary['telegram_enabled'] == 'True' else 'disabled'}")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            print(f"  {field}: {error['msg']}", file=sys.stderr)
        return None


def run_config_check(settings: Settings) -> int:
    """Print the validated configuration."""
    print("Configuration is valid!")
    print()
    print_config_summary(settings, dry_run=settings.dry_run)
    if not settings.telegram.enabled:
        print("  Note: TELEGRAM_BOT_TOKEN is not set; alerts will only be logged.")
        print()
    print("All checks passed. Ready to run.")
    return EXIT_SUCCESS


async def run_init_db(settings: Settings) -> int:
    """Create all database tables."""
    db = DatabaseManager(settings.database.async_url)
    try:
        await db.create_tables()
    finally:
        await db.dispose()
    print("Database tables created.")
    return EXIT_SUCCESS


async def run_link(settings: Settings, polymarket_id: str, kalshi_ticker: str) -> int:
    """Link a Polymarket market with a Kalshi market."""
    db = DatabaseManager(settings.database.async_url)
    try:
        group_key = await link_markets(db, polymarket_id, kalshi_ticker)
    except LookupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        await db.dispose()
    print(f"Linked {polymarket_id} and {kalshi_ticker} (group {group_key}).")
    if not settings.kalshi.enabled:
        print("Note: set KALSHI_ENABLED=true so the sync refreshes Kalshi prices.")
    return EXIT_SUCCESS


async def run_sync_once(settings: Settings, dry_run: bool) -> int:
    """Run one sync pass and print its report."""
    report = await Pipeline(settings, dry_run=dry_run).run_sync_once()
    if report.skipped:
        print("Sync skipped: another pass is running.")
        return EXIT_SUCCESS
    print(
        f"Synced {report.total} markets in {report.duration_seconds:.1f}s: "
        f"{report.written} written, {report.unchanged} unchanged, {report.failed} failed"
    )
    for failure in report.failures[:10]:
        print(f"  {failure.platform}:{failure.external_id}: {failure.error}")
    return EXIT_SUCCESS


async def run_pipeline(
    settings: Settings,
    dry_run: bool,
    health_port: int | None = None,
    shutdown_timeout: float = 30.0,
) -> int:
    """Run the pipeline until a shutdown signal arrives.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)

    try:
        async with shutdown:
            pipeline = Pipeline(settings, dry_run=dry_run, health_port=health_port)
            shutdown.register_cleanup(pipeline.stop)

            logger.info("Starting pipeline...")
            await pipeline.start()
            logger.info("Pipeline running. Press Ctrl+C to stop.")

            await shutdown.wait()
            logger.info("Shutdown signal received, stopping pipeline...")

        return EXIT_SUCCESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception("Pipeline failed: %s", e)
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    configure_logging(args.log_level or settings.log_level)

    if args.config_check:
        print_banner()
        sys.exit(run_config_check(settings))

    dry_run = args.dry_run or settings.dry_run

    try:
        if args.init_db:
            sys.exit(asyncio.run(run_init_db(settings)))
        if args.link:
            sys.exit(asyncio.run(run_link(settings, *args.link)))
        if args.sync_once:
            sys.exit(asyncio.run(run_sync_once(settings, dry_run)))
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        logging.getLogger(__name__).exception("Command failed: %s", e)
        sys.exit(EXIT_ERROR)

    print_banner()
    print_config_summary(settings, dry_run)
    sys.exit(asyncio.run(run_pipeline(settings, dry_run, args.health_port)))


if __name__ == "__main__":
    main()
