"""CLI entry point for the fingerprint risk engine.

This module provides operator commands for initializing the database,
evaluating identities and reading dashboard aggregates.

Usage:
    python -m fingerprint_risk [options]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.config
import sys
from typing import Any, NoReturn

from pydantic import ValidationError

from fingerprint_risk import __version__
from fingerprint_risk.config import Settings, clear_settings_cache, get_settings
from fingerprint_risk.detector.aggregator import RiskAggregator
from fingerprint_risk.storage.database import create_engine, create_session_factory, init_models
from fingerprint_risk.storage.errors import StoreError
from fingerprint_risk.storage.stats import StatsRepository

# Application info
APP_NAME = "Fingerprint Risk Engine"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="fingerprint-risk",
        description="Score anonymous visitors for fraud from device and activity signals.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m fingerprint_risk --config-check        Validate config and exit
  python -m fingerprint_risk --init-db             Create database tables
  python -m fingerprint_risk --evaluate IDENTITY   Re-score one identity
  python -m fingerprint_risk --stats               Print dashboard counts
  python -m fingerprint_risk --patterns 7          Fraud patterns of the last 7 days
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )

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

    commands = parser.add_mutually_exclusive_group()
    commands.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables that do not exist yet",
    )
    commands.add_argument(
        "--evaluate",
        metavar="IDENTITY_ID",
        default=None,
        help="Re-evaluate an identity, store its score and print the result",
    )
    commands.add_argument(
        "--stats",
        action="store_true",
        help="Print dashboard statistics",
    )
    commands.add_argument(
        "--patterns",
        metavar="DAYS",
        type=int,
        default=None,
        help="Print fraud pattern frequencies over the trailing DAYS",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure structured logging for the application.

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
                "stream": "ext://sys.stderr",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        # Quieter logging for noisy libraries
        "loggers": {
            "sqlalchemy.engine": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
            "asyncpg": {"level": "WARNING"},
            "redis": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_banner() -> None:
    """Print the application banner."""
    print(f"{APP_NAME} v{APP_VERSION}")
    print()


def print_config_summary(settings: Settings) -> None:
    """Print a summary of the configuration.

    Args:
        settings: Application settings.
    """
    summary = settings.redacted_summary()
    rate_limit = summary["rate_limit"]
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  Redis: {summary['redis_url']}")
    print(f"  Rate Limit Backend: {rate_limit['backend']}")
    print(f"  URL Creation Quota: {rate_limit['url_creation']}")
    print(f"  Default Quota: {rate_limit['default']}")
    print(f"  Store Timeout: {summary['store_timeout_seconds']}s")
    print(f"  Log Level: {summary['log_level']}")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        # Clear cache to force reload
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            msg = error["msg"]
            print(f"  {field}: {msg}", file=sys.stderr)
        return None


def run_config_check(settings: Settings) -> int:
    """Run configuration check and exit.

    Args:
        settings: Validated settings.

    Returns:
        Exit code (0 for success).
    """
    print_banner()
    print("Configuration is valid!")
    print()
    print_config_summary(settings)
    print("All checks passed. Ready to run.")
    return EXIT_SUCCESS


def print_json(payload: dict[str, Any]) -> None:
    """Print a JSON document to stdout."""
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def run_command(settings: Settings, args: argparse.Namespace) -> int:
    """Run one database command.

    Args:
        settings: Application settings.
        args: Parsed command line arguments.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    engine = create_engine(settings.database.url)
    policy = settings.store.to_policy()

    try:
        if args.init_db:
            await init_models(engine)
            print("Database initialized.")
            return EXIT_SUCCESS

        session_factory = create_session_factory(engine)
        async with session_factory() as session:
            if args.evaluate is not None:
                aggregator = RiskAggregator(
                    session,
                    thresholds=settings.detection.to_thresholds(),
                    policy=policy,
                )
                result = await aggregator.evaluate(args.evaluate)
                await session.commit()
                print_json(result.to_dict())
                return EXIT_SUCCESS

            stats = StatsRepository(session, policy)
            if args.stats:
                print_json((await stats.dashboard_stats()).to_dict())
            else:
                print_json((await stats.fraud_pattern_frequency(args.patterns)).to_dict())
            return EXIT_SUCCESS
    except StoreError as e:
        logger.error("Store operation failed: %s", e)
        return EXIT_ERROR
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # Validate configuration first
    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    # Determine effective log level
    log_level = args.log_level or settings.log_level
    configure_logging(log_level)

    # Config check mode
    if args.config_check:
        sys.exit(run_config_check(settings))

    if not (args.init_db or args.stats or args.evaluate is not None or args.patterns is not None):
        parser.print_help()
        sys.exit(EXIT_SUCCESS)

    if args.patterns is not None and args.patterns < 1:
        print("--patterns DAYS must be at least 1", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        exit_code = asyncio.run(run_command(settings, args))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted by user")
        exit_code = EXIT_INTERRUPTED
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
