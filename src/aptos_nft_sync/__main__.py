"""CLI entry point for Aptos NFT Sync.

Runs one job (or all of them) once, or keeps running them on their
intervals with ``--loop``.

Usage:
    python -m aptos_nft_sync JOB [options]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.config
import sys
import time
from typing import NoReturn

from pydantic import ValidationError

from aptos_nft_sync import __version__
from aptos_nft_sync.config import Settings, clear_settings_cache, get_settings
from aptos_nft_sync.health import JobHealthMonitor
from aptos_nft_sync.jobs import (
    JOB_INTERVALS,
    JOBS,
    JobContext,
    JobFunction,
    JobResult,
    resolve_jobs,
    run_wallet_lookup,
    summarize,
)
from aptos_nft_sync.shutdown import GracefulShutdown

# Application info
APP_NAME = "Aptos NFT Sync"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

JOB_CHOICES = [*JOBS, "all"]

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="aptos-nft-sync",
        description="Reconcile Aptos NFT marketplace events into listings, sales and stats.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m aptos_nft_sync listings              Run one listings sync
  python -m aptos_nft_sync all --loop            Run every job on its interval
  python -m aptos_nft_sync catch-up --dry-run    Catch up without committing
  python -m aptos_nft_sync --config-check        Validate config and exit
  python -m aptos_nft_sync --wallet 0xabc         Print a wallet's holdings
        """,
    )

    parser.add_argument(
        "job",
        nargs="?",
        choices=JOB_CHOICES,
        default="all",
        help="Job to run (default: all)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )

    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running the job(s) on their intervals until stopped",
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Override the loop interval in seconds for every job",
    )

    parser.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit without running jobs",
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
        help="Run jobs but roll back every database write",
    )

    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Override health check port in --loop mode (default: from settings)",
    )

    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing database tables before running",
    )

    parser.add_argument(
        "--wallet",
        metavar="ADDRESS",
        default=None,
        help="Print the collections and gallery of a wallet as JSON instead of running jobs",
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
            "aiohttp": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)
    logging.captureWarnings(True)


def print_banner() -> None:
    """Print the application startup banner."""
    print(f"\n{APP_NAME} v{APP_VERSION}\n{'=' * (len(APP_NAME) + len(APP_VERSION) + 2)}\n")


def print_config_summary(settings: Settings, dry_run: bool) -> None:
    """Print a summary of the configuration.

    Args:
        settings: Application settings.
        dry_run: Whether dry-run mode is enabled.
    """
    summary = settings.redacted_summary()
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  Redis: {summary['redis_url']} (cache {summary['redis_cache_enabled']})")
    aptos = settings.aptos
    print(f"  Indexer: {aptos.indexer_url} (max retries {aptos.max_retries})")
    print(f"  Log Level: {summary['log_level']}")
    print(f"  Health Port: {summary['health_port']}")
    print(f"  Dry Run: {dry_run}")
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
    """Print the validated configuration.

    Args:
        settings: Validated settings.

    Returns:
        Exit code (0 for success).
    """
    print("Configuration is valid!")
    print()
    print_config_summary(settings, dry_run=settings.dry_run)
    print(f"Jobs: {', '.join(JOBS)}")
    print("All checks passed. Ready to run.")
    return EXIT_SUCCESS


async def execute_job(name: str, func: JobFunction, context: JobContext) -> JobResult:
    """Run one job, turning an unexpected crash into a failed JobResult."""
    logger.info("Running job %s", name)
    started = time.monotonic()
    try:
        result = await func(context)
    except Exception as e:
        logger.exception("Job %s crashed", name)
        return JobResult.failure(str(e), time.monotonic() - started)

    logger.info(
        "Job %s finished: success=%s processed=%d failed=%d in %.1fs",
        name,
        result.success,
        result.collections_processed,
        result.collections_failed,
        result.duration_seconds,
    )
    return result


async def run_once(
    settings: Settings,
    job_name: str,
    *,
    dry_run: bool,
    init_db: bool = False,
) -> int:
    """Run the selected job(s) a single time.

    Returns:
        EXIT_SUCCESS when every job succeeded, EXIT_ERROR otherwise.
    """
    context = JobContext.from_settings(settings, dry_run=dry_run)
    results: dict[str, JobResult] = {}
    try:
        if init_db:
            await context.database.init_schema()
        for name, func in resolve_jobs(job_name):
            results[name] = await execute_job(name, func, context)
    except Exception as e:
        logger.exception("Run failed: %s", e)
        return EXIT_ERROR
    finally:
        await context.close()

    logger.info("Results: %s", summarize(results))
    return EXIT_SUCCESS if all(r.success for r in results.values()) else EXIT_ERROR


async def run_wallet(settings: Settings, wallet: str, *, dry_run: bool) -> int:
    """Print one wallet's collections and gallery as JSON.

    Returns:
        EXIT_SUCCESS, or EXIT_ERROR when the lookup failed.
    """
    context = JobContext.from_settings(settings, dry_run=dry_run)
    try:
        snapshot = await run_wallet_lookup(context, wallet)
    except Exception as e:
        logger.exception("Wallet lookup failed: %s", e)
        return EXIT_ERROR
    finally:
        await context.close()

    print(json.dumps(snapshot.to_dict(), indent=2))
    return EXIT_SUCCESS


async def run_scheduler(
    settings: Settings,
    job_name: str,
    *,
    dry_run: bool,
    interval: float | None = None,
    health_port: int | None = None,
    init_db: bool = False,
    shutdown_timeout: float = 30.0,
) -> int:
    """Run the selected job(s) on their intervals until a shutdown signal.

    Each job is due immediately at start, then every ``interval`` seconds
    (or its default interval). A signal stops the loop between runs.

    Returns:
        Exit code.
    """
    jobs = resolve_jobs(job_name)
    intervals = {name: interval or JOB_INTERVALS[name] for name, _ in jobs}

    monitor = JobHealthMonitor()
    for name, _ in jobs:
        monitor.register_job(name, interval_seconds=intervals[name])

    context = JobContext.from_settings(settings, dry_run=dry_run)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)
    shutdown.register_cleanup(monitor.stop_http_server)
    shutdown.register_cleanup(context.close)

    try:
        async with shutdown:
            if init_db:
                await context.database.init_schema()
            await monitor.start_http_server(health_port or settings.health_port)

            next_due = {name: 0.0 for name, _ in jobs}
            while not shutdown.is_shutdown_requested:
                for name, func in jobs:
                    if shutdown.is_shutdown_requested:
                        break
                    if next_due[name] > time.monotonic():
                        continue
                    result = await execute_job(name, func, context)
                    monitor.record_run(name, result)
                    next_due[name] = time.monotonic() + intervals[name]

                wait = max(0.0, min(next_due.values()) - time.monotonic())
                logger.debug("Next run in %.0fs", wait)
                if await shutdown.sleep(wait):
                    break

        logger.info("Scheduler stopped")
        return EXIT_SUCCESS
    except Exception as e:
        logger.exception("Scheduler failed: %s", e)
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

    log_level = args.log_level or settings.log_level
    configure_logging(log_level)

    print_banner()

    if args.config_check:
        sys.exit(run_config_check(settings))

    dry_run = args.dry_run or settings.dry_run
    print_config_summary(settings, dry_run)

    if args.wallet:
        coro = run_wallet(settings, args.wallet, dry_run=dry_run)
    elif args.loop:
        coro = run_scheduler(
            settings,
            args.job,
            dry_run=dry_run,
            interval=args.interval,
            health_port=args.health_port,
            init_db=args.init_db,
        )
    else:
        coro = run_once(settings, args.job, dry_run=dry_run, init_db=args.init_db)

    try:
        exit_code = asyncio.run(coro)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = EXIT_INTERRUPTED
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
