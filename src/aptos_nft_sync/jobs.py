"""Trigger surface: one coroutine per scheduled job.

Each job builds its collaborators from a shared JobContext, runs once and
reports a JobResult. Jobs never raise for per-collection problems; they
only report ``success=False`` when the run as a whole could not complete.

Usage:
    ```python
    context = JobContext.from_settings(get_settings())
    try:
        result = await run_listings_sync_job(context)
    finally:
        await context.close()
    ```
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from aptos_nft_sync.catalog.bootstrap import CollectionBootstrap
from aptos_nft_sync.catalog.models import WalletSnapshot
from aptos_nft_sync.catalog.stats import OwnerCountRefresher, StatsAggregator
from aptos_nft_sync.catalog.wallet import WalletAggregator
from aptos_nft_sync.config import Settings
from aptos_nft_sync.ingestor.event_source import EventSource
from aptos_nft_sync.ingestor.graphql_client import AptosIndexerClient, RetryPolicy
from aptos_nft_sync.ingestor.metadata import NftMetadataFetcher
from aptos_nft_sync.ingestor.quotes import ConversionRateSource
from aptos_nft_sync.reconciler.models import STEADY_SYNC_JOB, SyncCursor, SyncRunResult
from aptos_nft_sync.reconciler.orchestrator import CatalogSyncOrchestrator
from aptos_nft_sync.reconciler.price_resolver import PriceResolver
from aptos_nft_sync.storage.database import DatabaseManager
from aptos_nft_sync.storage.repos import SyncCursorRepository

logger = logging.getLogger(__name__)

# Default loop intervals in seconds, per job
JOB_INTERVALS: dict[str, float] = {
    "listings": 600,
    "catch-up": 600,
    "stats": 600,
    "owners": 7200,
    "discover": 86400,
}


@dataclass
class JobResult:
    """Envelope returned by every job.

    ``collections_processed`` and ``collections_failed`` tell an empty run
    apart from one where every collection failed.
    """

    success: bool
    error: str | None = None
    collections_processed: int = 0
    collections_failed: int = 0
    collections_skipped: int = 0
    duration_seconds: float = 0.0

    @classmethod
    def from_run(cls, run: SyncRunResult, duration_seconds: float = 0.0) -> JobResult:
        return cls(
            success=run.success,
            error=run.error,
            collections_processed=run.collections_processed,
            collections_failed=run.collections_failed,
            collections_skipped=run.collections_skipped,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def failure(cls, error: str, duration_seconds: float = 0.0) -> JobResult:
        return cls(success=False, error=error, duration_seconds=duration_seconds)


@dataclass
class JobContext:
    """Long-lived collaborators shared by every job run."""

    settings: Settings
    database: DatabaseManager
    indexer: AptosIndexerClient
    metadata: NftMetadataFetcher
    rates: ConversionRateSource
    http_client: httpx.AsyncClient | None = None
    redis: Redis | None = None

    @classmethod
    def from_settings(cls, settings: Settings, *, dry_run: bool = False) -> JobContext:
        """Wire every collaborator from settings.

        Args:
            settings: Application settings.
            dry_run: Roll back every database write.
        """
        http_client = httpx.AsyncClient(timeout=settings.aptos.request_timeout)
        redis: Redis | None = None
        if settings.redis.cache_enabled:
            redis = Redis.from_url(settings.redis.url, decode_responses=True)

        database = DatabaseManager(
            settings.database.url,
            echo=settings.database.echo,
            dry_run=dry_run or settings.dry_run,
        )
        indexer = AptosIndexerClient(
            settings.aptos.indexer_url,
            http_client=http_client,
            requests_per_second=settings.aptos.requests_per_second,
            retry_policy=RetryPolicy(
                max_retries=settings.aptos.max_retries,
                base_delay=settings.aptos.retry_base_delay,
            ),
        )
        metadata = NftMetadataFetcher(
            indexer,
            http_client,
            redis=redis,
            ipfs_gateway=settings.aptos.ipfs_gateway,
            cache_ttl_seconds=settings.redis.cache_ttl_seconds,
        )
        api_key = settings.quotes.api_key
        rates = ConversionRateSource(
            http_client,
            api_url=settings.quotes.api_url,
            api_key=api_key.get_secret_value() if api_key else None,
            coin_id=settings.quotes.coin_id,
            fiat_currency=settings.quotes.fiat_currency,
            secondary_currency=settings.quotes.secondary_currency,
            redis=redis,
            cache_ttl_seconds=settings.redis.cache_ttl_seconds,
        )
        return cls(
            settings=settings,
            database=database,
            indexer=indexer,
            metadata=metadata,
            rates=rates,
            http_client=http_client,
            redis=redis,
        )

    def new_orchestrator(self) -> CatalogSyncOrchestrator:
        """Build an orchestrator with a fresh price memo for one run."""
        return CatalogSyncOrchestrator(
            database=self.database,
            event_source=EventSource(self.indexer),
            price_resolver=PriceResolver(self.indexer),
            metadata=self.metadata,
            settings=self.settings.sync,
        )

    async def close(self) -> None:
        """Release HTTP, Redis and database resources."""
        await self.indexer.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.database.dispose()


async def run_listings_sync_job(context: JobContext) -> JobResult:
    """Run one steady-state listings sync.

    The cursor is read before the run and persisted only when the run
    succeeds, so a failed run is retried from the same page.
    """
    started = time.monotonic()
    try:
        async with context.database.session() as session:
            stored = await SyncCursorRepository(session).get(STEADY_SYNC_JOB)
    except SQLAlchemyError as e:
        logger.error("Failed to read listings cursor: %s", e)
        return JobResult.failure(f"Failed to read cursor: {e}", time.monotonic() - started)

    cursor = SyncCursor(
        job_name=STEADY_SYNC_JOB,
        start_after=stored.start_after if stored else None,
        limit=stored.limit if stored else context.settings.sync.collections_per_page,
    )
    run = await context.new_orchestrator().run_listings_sync(cursor)

    if run.success and run.cursor is not None:
        try:
            async with context.database.session() as session:
                await SyncCursorRepository(session).save(
                    run.cursor.job_name, run.cursor.start_after, run.cursor.limit
                )
        except SQLAlchemyError as e:
            logger.error("Failed to persist listings cursor: %s", e)
            run.success = False
            run.error = f"Failed to persist cursor: {e}"

    return JobResult.from_run(run, time.monotonic() - started)


async def run_catch_up_job(context: JobContext) -> JobResult:
    """Advance the oldest collection that is still catching up."""
    started = time.monotonic()
    run = await context.new_orchestrator().run_catch_up()
    return JobResult.from_run(run, time.monotonic() - started)


async def run_stats_job(context: JobContext) -> JobResult:
    """Recompute stats of every caught-up collection."""
    started = time.monotonic()
    aggregator = StatsAggregator(
        database=context.database,
        rates=context.rates,
        settings=context.settings.sync,
    )
    run = await aggregator.refresh_all()
    return JobResult.from_run(run, time.monotonic() - started)


async def run_owner_count_job(context: JobContext) -> JobResult:
    """Refresh the owner count of every active collection."""
    started = time.monotonic()
    refresher = OwnerCountRefresher(
        database=context.database,
        client=context.indexer,
        settings=context.settings.sync,
    )
    run = await refresher.refresh_all()
    return JobResult.from_run(run, time.monotonic() - started)


async def run_discovery_job(context: JobContext) -> JobResult:
    """Add untracked high-volume collections."""
    started = time.monotonic()
    bootstrap = CollectionBootstrap(
        database=context.database,
        client=context.indexer,
        metadata=context.metadata,
        settings=context.settings.sync,
    )
    run = await bootstrap.discover()
    return JobResult.from_run(run, time.monotonic() - started)


async def run_wallet_lookup(context: JobContext, wallet: str) -> WalletSnapshot:
    """Aggregate one wallet's holdings and active listings.

    Not scheduled; the CLI runs it on demand for a single address.

    Raises:
        RetryError: If the wallet's ownership pages cannot be fetched.
        SQLAlchemyError: If the catalog cannot be read.
    """
    aggregator = WalletAggregator(
        database=context.database,
        client=context.indexer,
        metadata=context.metadata,
        settings=context.settings.sync,
        ipfs_gateway=context.settings.aptos.ipfs_gateway,
    )
    return await aggregator.aggregate(wallet)


JobFunction = Callable[[JobContext], Awaitable[JobResult]]

JOBS: dict[str, JobFunction] = {
    "listings": run_listings_sync_job,
    "catch-up": run_catch_up_job,
    "stats": run_stats_job,
    "owners": run_owner_count_job,
    "discover": run_discovery_job,
}


def resolve_jobs(name: str) -> list[tuple[str, JobFunction]]:
    """Map a CLI job name to the jobs it runs; ``all`` runs every job in order."""
    if name == "all":
        return list(JOBS.items())
    try:
        return [(name, JOBS[name])]
    except KeyError:
        raise ValueError(f"Unknown job: {name}") from None


def summarize(results: dict[str, JobResult]) -> dict[str, Any]:
    """Flatten job results for logging."""
    return {
        name: {
            "success": r.success,
            "processed": r.collections_processed,
            "failed": r.collections_failed,
            "error": r.error,
        }
        for name, r in results.items()
    }
