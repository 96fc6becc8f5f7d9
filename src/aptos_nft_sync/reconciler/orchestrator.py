"""Catalog sync orchestrator.

Drives the per-collection reconciliation: fetch events after the stored
watermark, classify them, resolve prices, and commit one atomic batch of
listing/activity intents plus the new watermark per collection.

Collections move through NEW -> CATCHING_UP -> STEADY. The catch-up run
handles the first two states one collection at a time; the steady-state
run pages through caught-up collections with an explicit cursor.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from aptos_nft_sync.config import SyncSettings
from aptos_nft_sync.ingestor.graphql_client import IndexerClientError
from aptos_nft_sync.ingestor.marketplaces import EventKind
from aptos_nft_sync.ingestor.models import EventDecodeError, TokenActivity
from aptos_nft_sync.reconciler.classifier import classify
from aptos_nft_sync.reconciler.models import (
    ActivityInsert,
    CollectionSyncBatch,
    CollectionSyncState,
    CommitError,
    ListingDelete,
    ListingUpsert,
    PriceResolution,
    SyncCursor,
    SyncRunResult,
    WatermarkUpdate,
)
from aptos_nft_sync.storage.repos import (
    ActivityRepository,
    BatchOutcome,
    CatalogWriter,
    CollectionRepository,
    ListingRepository,
    TrackedCollectionDTO,
)

if TYPE_CHECKING:
    from aptos_nft_sync.ingestor.event_source import EventSource
    from aptos_nft_sync.ingestor.metadata import NftMetadataFetcher
    from aptos_nft_sync.reconciler.price_resolver import PriceResolver
    from aptos_nft_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# A resolved listing of one of these kinds is not an active listing
NON_LISTING_KINDS = frozenset({EventKind.FILL, EventKind.CANCEL})


class SyncMode(str, Enum):
    """Which branch of the state machine a run drives."""

    STEADY = "steady"
    CATCH_UP = "catch_up"


@dataclass(frozen=True)
class FetchPlan:
    """Pagination budget of one collection fetch.

    Attributes:
        page_size: Events per page.
        max_pages: Pages fetched at most.
        caught_up_below: In catch-up mode, a total under this many events
            means the history is exhausted.
    """

    page_size: int
    max_pages: int
    caught_up_below: int | None = None

    @classmethod
    def for_mode(cls, mode: SyncMode, settings: SyncSettings) -> FetchPlan:
        if mode == SyncMode.CATCH_UP:
            return cls(
                page_size=settings.catch_up_page_size,
                max_pages=settings.catch_up_pages,
                caught_up_below=settings.catch_up_page_size * settings.catch_up_pages,
            )
        return cls(page_size=settings.steady_page_size, max_pages=settings.steady_pages)


class CatalogSyncOrchestrator:
    """Reconciles tracked collections against the indexer's event feed.

    Each collection is processed fully (network reads, then one commit)
    before the next one starts. Within a collection, price resolutions run
    concurrently up to ``resolve_concurrency``.

    Example:
        ```python
        orchestrator = CatalogSyncOrchestrator(
            database=db,
            event_source=EventSource(indexer),
            price_resolver=PriceResolver(indexer),
            metadata=fetcher,
            settings=settings.sync,
        )
        result = await orchestrator.run_listings_sync(SyncCursor())
        await save_cursor(result.cursor)
        ```
    """

    def __init__(
        self,
        *,
        database: DatabaseManager,
        event_source: EventSource,
        price_resolver: PriceResolver,
        metadata: NftMetadataFetcher | None = None,
        settings: SyncSettings | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            database: Session provider for reads and per-collection commits.
            event_source: Paginated token activity source.
            price_resolver: Cross-marketplace price resolver.
            metadata: Optional image fetcher for new listings and activities.
            settings: Sync tuning knobs.
        """
        self._database = database
        self._events = event_source
        self._resolver = price_resolver
        self._metadata = metadata
        self._settings = settings or SyncSettings()
        self._semaphore = asyncio.Semaphore(self._settings.resolve_concurrency)

    async def run_listings_sync(self, cursor: SyncCursor) -> SyncRunResult:
        """Run the steady-state sync over cursor pages of active collections.

        Collections still catching up are skipped but still move the cursor.
        The returned result carries the cursor for the next run; persisting
        it is the caller's job.

        Args:
            cursor: Where the previous run stopped.

        Returns:
            SyncRunResult; ``success`` is False only when the catalog page
            could not be read or a batch failed to commit.
        """
        result = SyncRunResult(cursor=cursor)
        start_after = cursor.start_after
        next_start: str | None = start_after

        for page in range(self._settings.pages_per_run):
            try:
                async with self._database.session() as session:
                    collections = await CollectionRepository(session).list_active_page(
                        self._settings.chain,
                        start_after=start_after,
                        limit=cursor.limit,
                    )
            except SQLAlchemyError as e:
                logger.error("Failed to load collection page %d: %s", page, e)
                result.success = False
                result.error = f"Failed to load collections: {e}"
                return result

            logger.info(
                "Listings sync page %d: %d collection(s) after %s",
                page,
                len(collections),
                start_after,
            )
            if not collections:
                next_start = None
                break

            for collection in collections:
                if collection.caught_up_txn:
                    committed = await self._sync_guarded(collection, SyncMode.STEADY, result)
                    if not committed:
                        return result
                else:
                    logger.debug("Skipping %s: not caught up", collection.name)
                    result.collections_skipped += 1

            start_after = collections[-1].id
            next_start = start_after if len(collections) == cursor.limit else None
            if next_start is None:
                break

        result.cursor = cursor.advanced(next_start)
        logger.info(
            "Listings sync done: processed=%d failed=%d skipped=%d next_cursor=%s",
            result.collections_processed,
            result.collections_failed,
            result.collections_skipped,
            next_start,
        )
        return result

    async def run_catch_up(self) -> SyncRunResult:
        """Advance the oldest collection that has not caught up yet.

        Returns:
            SyncRunResult for the single collection processed (if any).
        """
        result = SyncRunResult()
        try:
            async with self._database.session() as session:
                collection = await CollectionRepository(session).get_oldest_not_caught_up(
                    self._settings.chain
                )
        except SQLAlchemyError as e:
            logger.error("Failed to load catch-up collection: %s", e)
            result.success = False
            result.error = f"Failed to load collections: {e}"
            return result

        if collection is None:
            logger.info("Catch-up: every active collection is caught up")
            return result

        await self._sync_guarded(collection, SyncMode.CATCH_UP, result)
        return result

    async def _sync_guarded(
        self,
        collection: TrackedCollectionDTO,
        mode: SyncMode,
        result: SyncRunResult,
    ) -> bool:
        """Sync one collection, folding its outcome into ``result``.

        Returns:
            False if the run must abort (commit failure), True otherwise.
        """
        if not collection.verified_creator_address or not collection.id:
            logger.warning("Skipping collection %s without creator address", collection.name)
            result.collections_skipped += 1
            return True

        try:
            outcome = await self.sync_collection(collection, mode)
        except CommitError as e:
            logger.error("%s", e)
            result.success = False
            result.error = str(e)
            result.collections_failed += 1
            return False
        except (IndexerClientError, EventDecodeError) as e:
            logger.error("Skipping %s this run: %s", collection.name, e)
            result.collections_failed += 1
            return True
        except Exception:
            logger.exception("Unexpected error syncing %s", collection.name)
            result.collections_failed += 1
            return True

        result.collections_processed += 1
        result.outcomes[collection.id] = outcome
        return True

    async def sync_collection(
        self,
        collection: TrackedCollectionDTO,
        mode: SyncMode,
    ) -> BatchOutcome:
        """Build and commit one collection's batch.

        Raises:
            TransportError: If fetching or price resolution fails.
            CommitError: If the batch cannot be committed.
        """
        state = CollectionSyncState.from_flags(
            collection.caught_up_txn, collection.last_transaction_version
        )
        batch = await self.build_batch(collection, mode)

        try:
            async with self._database.session() as session:
                outcome = await CatalogWriter(session).apply(batch)
        except SQLAlchemyError as e:
            raise CommitError(batch.collection_id, e) from e

        logger.info(
            "Synced %s (%s): +%d listings, -%d listings, +%d activities%s",
            collection.name,
            state.value,
            outcome.listings_upserted,
            outcome.listings_deleted,
            outcome.activities_inserted,
            ", now caught up" if outcome.caught_up else "",
        )
        return outcome

    async def build_batch(
        self,
        collection: TrackedCollectionDTO,
        mode: SyncMode,
    ) -> CollectionSyncBatch:
        """Run fetch, classify and resolve for one collection.

        No writes happen here; the batch is the complete set of intents.

        Raises:
            ValueError: If the collection has not been persisted.
        """
        if collection.id is None:
            raise ValueError(f"Collection {collection.name} has no id")
        plan = FetchPlan.for_mode(mode, self._settings)
        after_version = (
            collection.last_transaction_version
            if collection.last_transaction_version is not None
            else self._settings.default_start_version
        )

        fetch = await self._events.fetch_events(
            collection.verified_creator_address,
            after_version,
            page_size=plan.page_size,
            max_pages=plan.max_pages,
        )
        classification = classify(fetch.events)

        listing_candidates = [
            e for e in classification.listing_candidates if e.transaction_version is not None
        ]
        sale_candidates = [
            e for e in classification.sale_candidates if e.transaction_version is not None
        ]

        listing_resolutions = await self._resolve_all(listing_candidates)
        sale_resolutions = await self._resolve_all(sale_candidates)

        existing_listings, existing_activities = await self._load_existing(
            listing_candidates, sale_candidates
        )

        batch = CollectionSyncBatch(collection_id=collection.id)
        await self._add_listings(
            batch, collection, listing_candidates, listing_resolutions, existing_listings
        )
        await self._add_sales(
            batch, collection, sale_candidates, sale_resolutions, existing_activities
        )

        mark_caught_up = (
            mode == SyncMode.CATCH_UP
            and plan.caught_up_below is not None
            and fetch.total_fetched < plan.caught_up_below
        )
        batch.watermark = WatermarkUpdate(
            collection_id=collection.id,
            last_transaction_version=fetch.last_version,
            mark_caught_up=mark_caught_up,
            synced_at=datetime.now(UTC),
        )

        logger.debug(
            "%s: %d events, %d listing candidates, %d sale candidates, last_version=%s",
            collection.name,
            fetch.total_fetched,
            len(listing_candidates),
            len(sale_candidates),
            fetch.last_version,
        )
        return batch

    async def _resolve_one(self, transaction_version: int, token_name: str) -> PriceResolution:
        async with self._semaphore:
            return await self._resolver.resolve(transaction_version, token_name)

    async def _resolve_all(self, events: Sequence[TokenActivity]) -> list[PriceResolution]:
        """Resolve prices concurrently; the first failure is re-raised."""
        if not events:
            return []
        results = await asyncio.gather(
            *(
                self._resolve_one(e.transaction_version, e.name)
                for e in events
                if e.transaction_version is not None
            ),
            return_exceptions=True,
        )
        resolutions: list[PriceResolution] = []
        for item in results:
            if isinstance(item, BaseException):
                raise item
            resolutions.append(item)
        return resolutions

    async def _load_existing(
        self,
        listing_candidates: Sequence[TokenActivity],
        sale_candidates: Sequence[TokenActivity],
    ) -> tuple[set[str], set[tuple[int, str]]]:
        """Read which candidate tokens already have a listing or activity."""
        async with self._database.session() as session:
            listings = await ListingRepository(session).existing_tokens(
                e.token_data_id_hash for e in listing_candidates
            )
            activities = await ActivityRepository(session).existing_keys(
                (e.transaction_version, e.token_data_id_hash)
                for e in sale_candidates
                if e.transaction_version is not None
            )
        return listings, activities

    async def _image_for(self, token_data_id_hash: str) -> str | None:
        if self._metadata is None:
            return None
        return await self._metadata.get_token_image(token_data_id_hash)

    async def _add_listings(
        self,
        batch: CollectionSyncBatch,
        collection: TrackedCollectionDTO,
        candidates: Sequence[TokenActivity],
        resolutions: Sequence[PriceResolution],
        existing: set[str],
    ) -> None:
        for event, resolution in zip(candidates, resolutions, strict=True):
            version = event.transaction_version
            if resolution.price is None or version is None:
                continue
            if resolution.kind in NON_LISTING_KINDS:
                logger.debug(
                    "%s @ %s resolved as %s, not a listing",
                    event.name,
                    event.transaction_version,
                    resolution.event_type,
                )
                continue

            image_url = None
            if event.token_data_id_hash not in existing:
                image_url = await self._image_for(event.token_data_id_hash)

            batch.listing_upserts.append(
                ListingUpsert(
                    token_data_id_hash=event.token_data_id_hash,
                    collection_id=batch.collection_id,
                    name=event.name,
                    price=resolution.price,
                    marketplace=resolution.marketplace or "",
                    event_type=resolution.event_type or "",
                    transaction_version=version,
                    from_address=event.from_address,
                    transaction_timestamp=event.transaction_timestamp,
                    image_url=image_url,
                )
            )

    async def _add_sales(
        self,
        batch: CollectionSyncBatch,
        collection: TrackedCollectionDTO,
        candidates: Sequence[TokenActivity],
        resolutions: Sequence[PriceResolution],
        existing: set[tuple[int, str]],
    ) -> None:
        seen = set(existing)
        for event, resolution in zip(candidates, resolutions, strict=True):
            version = event.transaction_version
            if resolution.price is None or version is None:
                continue

            # A sale or delisting supersedes any earlier listing of the token
            batch.listing_deletes.append(
                ListingDelete(
                    token_data_id_hash=event.token_data_id_hash,
                    sale_version=version,
                )
            )

            if resolution.kind != EventKind.FILL:
                continue
            key = (version, event.token_data_id_hash)
            if key in seen:
                continue
            seen.add(key)

            batch.activity_inserts.append(
                ActivityInsert(
                    transaction_version=version,
                    token_data_id_hash=event.token_data_id_hash,
                    collection_id=batch.collection_id,
                    collection_name=collection.name,
                    slug=collection.slug,
                    creator_address=collection.verified_creator_address,
                    name=event.name,
                    price=resolution.price,
                    marketplace=resolution.marketplace or "",
                    event_type=resolution.event_type or "",
                    to_address=event.to_address,
                    block_datetime=event.transaction_timestamp,
                    image_url=await self._image_for(event.token_data_id_hash),
                )
            )
