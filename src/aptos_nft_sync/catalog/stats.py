"""Collection stats aggregation and owner-count refresh.

Stats are derived from the catalog alone: active listings give the floor
and listed count, the most recent sale activities give the trailing
24-hour volume. Conversion rates only scale the floor into fiat and the
headline figures into the secondary currency.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from aptos_nft_sync.catalog.models import ZERO, CollectionStats, SecondaryStats
from aptos_nft_sync.config import SyncSettings
from aptos_nft_sync.ingestor.graphql_client import IndexerClientError
from aptos_nft_sync.ingestor.marketplaces import PRICE_DECIMALS
from aptos_nft_sync.ingestor.models import EventDecodeError
from aptos_nft_sync.reconciler.models import SyncRunResult
from aptos_nft_sync.storage.repos import (
    ActivityDTO,
    ActivityRepository,
    CollectionRepository,
    ListingRepository,
    TrackedCollectionDTO,
)

if TYPE_CHECKING:
    from aptos_nft_sync.ingestor.graphql_client import AptosIndexerClient
    from aptos_nft_sync.ingestor.quotes import ConversionRateSource
    from aptos_nft_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(hours=24)
CENTS = Decimal("0.01")
SECONDARY_QUANTUM = Decimal(1).scaleb(-PRICE_DECIMALS)


def _round2(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_collection_stats(
    listing_prices: Iterable[Decimal],
    activities: Iterable[ActivityDTO],
    *,
    total_supply: int,
    num_owners: int,
    fiat_rate: Decimal | None,
    now: datetime | None = None,
) -> CollectionStats:
    """Compute a collection's stats from its listings and recent sales.

    Args:
        listing_prices: Prices of every active listing.
        activities: Most recent sale activities (already limited).
        total_supply: Supply stored at bootstrap.
        num_owners: Owner count stored by the owner refresh.
        fiat_rate: Native coin to fiat rate, None when unavailable.
        now: Reference time for the 24-hour window.

    Returns:
        CollectionStats. With no listings the floor is None and the market
        cap 0; without sales the volume and average are 0.
    """
    now = now or datetime.now(UTC)
    prices = list(listing_prices)
    floor_price = min(prices) if prices else None

    one_day_volume = ZERO
    one_day_sales = 0
    for activity in activities:
        if activity.block_datetime is None:
            continue
        if now - activity.block_datetime <= ONE_DAY:
            one_day_volume += activity.price
            one_day_sales += 1

    average = _round2(one_day_volume / one_day_sales) if one_day_sales else ZERO

    usd_floor_price = ZERO
    if floor_price is not None and fiat_rate is not None:
        usd_floor_price = _round2(floor_price * fiat_rate)

    market_cap = floor_price * total_supply if floor_price is not None else ZERO

    return CollectionStats(
        floor_price=floor_price,
        usd_floor_price=usd_floor_price,
        one_day_volume=_round2(one_day_volume),
        one_day_sales=one_day_sales,
        one_day_average_price=average,
        listed_count=len(prices),
        market_cap=market_cap,
        total_supply=total_supply,
        num_owners=num_owners,
    )


def project_secondary(stats: CollectionStats, rate: Decimal | None) -> SecondaryStats:
    """Scale the headline figures into the secondary currency.

    Every field is 0 when the rate is unavailable.
    """
    if rate is None:
        return SecondaryStats()

    def scale(value: Decimal | None) -> Decimal:
        if value is None:
            return ZERO
        return (value * rate).quantize(SECONDARY_QUANTUM, rounding=ROUND_HALF_UP)

    return SecondaryStats(
        floor_price=scale(stats.floor_price),
        market_cap=scale(stats.market_cap),
        one_day_volume=scale(stats.one_day_volume),
    )


class StatsAggregator:
    """Recomputes stats for every caught-up active collection.

    All reads and computations happen first; the stats documents are then
    written in a single transaction, so a collection whose computation
    fails keeps its previous stats.

    Example:
        ```python
        aggregator = StatsAggregator(database=db, rates=rate_source)
        result = await aggregator.refresh_all()
        ```
    """

    def __init__(
        self,
        *,
        database: DatabaseManager,
        rates: ConversionRateSource,
        settings: SyncSettings | None = None,
    ) -> None:
        self._database = database
        self._rates = rates
        self._settings = settings or SyncSettings()

    async def refresh_all(self) -> SyncRunResult:
        """Refresh the stats of all caught-up active collections.

        Returns:
            SyncRunResult; ``success`` is False when the collections could
            not be loaded or the stats could not be written.
        """
        result = SyncRunResult()
        rates = await self._rates.get_rates()
        if rates.fiat is None:
            logger.warning("Fiat rate unavailable; usd_floor_price will be 0")

        try:
            async with self._database.session() as session:
                collections = await CollectionRepository(session).list_active(
                    self._settings.chain, caught_up=True
                )
        except SQLAlchemyError as e:
            logger.error("Failed to load collections for stats: %s", e)
            result.success = False
            result.error = f"Failed to load collections: {e}"
            return result

        pending: list[tuple[str, CollectionStats, SecondaryStats]] = []
        for collection in collections:
            if collection.id is None:
                continue
            try:
                stats = await self._compute_for(collection.id, collection, rates.fiat)
            except Exception:
                logger.exception("Failed to compute stats for %s", collection.name)
                result.collections_failed += 1
                continue
            pending.append((collection.id, stats, project_secondary(stats, rates.secondary)))

        if not pending:
            logger.info("Stats refresh: nothing to write (%d failed)", result.collections_failed)
            return result

        now = datetime.now(UTC)
        try:
            async with self._database.session() as session:
                repo = CollectionRepository(session)
                for collection_id, stats, secondary in pending:
                    await repo.replace_stats(
                        collection_id, stats.to_dict(), secondary.to_dict(), now
                    )
        except SQLAlchemyError as e:
            logger.error("Failed to write stats for %d collection(s): %s", len(pending), e)
            result.success = False
            result.error = f"Failed to write stats: {e}"
            result.collections_failed += len(pending)
            return result

        result.collections_processed = len(pending)
        logger.info(
            "Stats refresh done: processed=%d failed=%d",
            result.collections_processed,
            result.collections_failed,
        )
        return result

    async def _compute_for(
        self,
        collection_id: str,
        collection: TrackedCollectionDTO,
        fiat_rate: Decimal | None,
    ) -> CollectionStats:
        previous = CollectionStats.from_dict(collection.stats)
        async with self._database.session() as session:
            listings = await ListingRepository(session).list_by_collection(collection_id)
            activities = await ActivityRepository(session).list_recent_for_collection(
                collection_id, limit=self._settings.stats_activity_limit
            )
        return compute_collection_stats(
            (listing.price for listing in listings),
            activities,
            total_supply=previous.total_supply,
            num_owners=previous.num_owners,
            fiat_rate=fiat_rate,
        )


class OwnerCountRefresher:
    """Refreshes ``stats.num_owners`` from the indexer's ownership view.

    A zero count or a failed query leaves the stored value untouched.
    """

    def __init__(
        self,
        *,
        database: DatabaseManager,
        client: AptosIndexerClient,
        settings: SyncSettings | None = None,
    ) -> None:
        self._database = database
        self._client = client
        self._settings = settings or SyncSettings()

    async def refresh_all(self) -> SyncRunResult:
        """Query and store the owner count of every active collection."""
        result = SyncRunResult()
        try:
            async with self._database.session() as session:
                collections = await CollectionRepository(session).list_active(self._settings.chain)
        except SQLAlchemyError as e:
            logger.error("Failed to load collections for owner refresh: %s", e)
            result.success = False
            result.error = f"Failed to load collections: {e}"
            return result

        counts = await self._fetch_counts(collections, result)
        if not counts:
            return result

        try:
            async with self._database.session() as session:
                repo = CollectionRepository(session)
                for collection_id, num_owners in counts:
                    await repo.set_num_owners(collection_id, num_owners)
        except SQLAlchemyError as e:
            logger.error("Failed to write owner counts: %s", e)
            result.success = False
            result.error = f"Failed to write owner counts: {e}"
            result.collections_failed += len(counts)
            return result

        result.collections_processed = len(counts)
        logger.info(
            "Owner refresh done: processed=%d failed=%d skipped=%d",
            result.collections_processed,
            result.collections_failed,
            result.collections_skipped,
        )
        return result

    async def _fetch_counts(
        self,
        collections: Sequence[TrackedCollectionDTO],
        result: SyncRunResult,
    ) -> list[tuple[str, int]]:
        counts: list[tuple[str, int]] = []
        for collection in collections:
            if not collection.verified_creator_address or collection.id is None:
                result.collections_skipped += 1
                continue
            try:
                num_owners = await self._client.get_unique_owner_count(
                    collection.verified_creator_address
                )
            except (IndexerClientError, EventDecodeError) as e:
                logger.error("Owner count failed for %s: %s", collection.name, e)
                result.collections_failed += 1
                continue
            if num_owners <= 0:
                logger.debug("No owners reported for %s; keeping stored value", collection.name)
                result.collections_skipped += 1
                continue
            counts.append((collection.id, num_owners))
        return counts
