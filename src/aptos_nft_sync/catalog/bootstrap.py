"""Collection discovery from recent marketplace volume.

Recent sale events of every supported marketplace are summed per creator
address; the highest-volume creators that are not tracked yet are added
as new collections, which the catch-up run then backfills.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from aptos_nft_sync.catalog.models import CollectionStats, SecondaryStats, VolumeCandidate
from aptos_nft_sync.config import SyncSettings
from aptos_nft_sync.ingestor.graphql_client import IndexerClientError
from aptos_nft_sync.ingestor.marketplaces import SUPPORTED_MARKETPLACES, EventKind, Marketplace
from aptos_nft_sync.ingestor.models import EventDecodeError, MarketplaceEvent, parse_octas
from aptos_nft_sync.reconciler.models import DataIntegrityWarning, SyncRunResult
from aptos_nft_sync.storage.repos import CollectionRepository, TrackedCollectionDTO

if TYPE_CHECKING:
    from aptos_nft_sync.ingestor.graphql_client import AptosIndexerClient
    from aptos_nft_sync.ingestor.metadata import NftMetadataFetcher
    from aptos_nft_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def make_slug(name: str, chain: str = "aptos") -> str:
    """Build a collection slug: spaces become underscores, lowercased, chain suffix.

    >>> make_slug("Aptos Monkeys")
    'aptos_monkeys_aptos'
    """
    return "_".join(name.split(" ")).lower() + f"_{chain}"


@dataclass(frozen=True)
class SaleSample:
    """One priced fill event seen while scanning a marketplace."""

    creator_address: str
    collection_name: str
    price: Decimal
    marketplace: str


def rank_by_volume(sales: Iterable[SaleSample], top_n: int) -> list[VolumeCandidate]:
    """Sum sale prices per creator and keep the ``top_n`` largest.

    The collection name of the first sale seen names the candidate. Equal
    volumes keep first-seen order.
    """
    totals: dict[str, VolumeCandidate] = {}
    for sale in sales:
        current = totals.get(sale.creator_address)
        if current is None:
            totals[sale.creator_address] = VolumeCandidate(
                creator_address=sale.creator_address,
                collection_name=sale.collection_name,
                volume=sale.price,
                sales=1,
            )
        else:
            totals[sale.creator_address] = VolumeCandidate(
                creator_address=current.creator_address,
                collection_name=current.collection_name,
                volume=current.volume + sale.price,
                sales=current.sales + 1,
            )
    ranked = sorted(totals.values(), key=lambda c: c.volume, reverse=True)
    return ranked[:top_n]


class CollectionBootstrap:
    """Discovers and inserts high-volume collections that are not tracked yet.

    Example:
        ```python
        bootstrap = CollectionBootstrap(database=db, client=indexer, metadata=fetcher)
        result = await bootstrap.discover()
        print(f"Added {result.collections_processed} collection(s)")
        ```
    """

    def __init__(
        self,
        *,
        database: DatabaseManager,
        client: AptosIndexerClient,
        metadata: NftMetadataFetcher,
        marketplaces: Sequence[Marketplace] = SUPPORTED_MARKETPLACES,
        settings: SyncSettings | None = None,
    ) -> None:
        self._database = database
        self._client = client
        self._metadata = metadata
        self._marketplaces = tuple(marketplaces)
        self._settings = settings or SyncSettings()

    async def scan_recent_sales(self) -> list[SaleSample]:
        """Collect priced fill events from each marketplace's newest events.

        A marketplace whose query fails contributes the pages read before
        the failure; the scan moves on to the next marketplace.
        """
        samples: list[SaleSample] = []
        for marketplace in self._marketplaces:
            events = await self._scan_marketplace(marketplace)
            before = len(samples)
            for event in events:
                sample = self._sale_sample(marketplace, event)
                if sample is not None:
                    samples.append(sample)
            logger.info(
                "%s: %d event(s) scanned, %d sale(s) kept",
                marketplace.name,
                len(events),
                len(samples) - before,
            )
        return samples

    async def _scan_marketplace(self, marketplace: Marketplace) -> list[MarketplaceEvent]:
        events: list[MarketplaceEvent] = []
        before_version: int | None = None
        for page in range(marketplace.volume_pages):
            try:
                batch = await self._client.get_recent_marketplace_events(
                    marketplace, before_version
                )
            except (IndexerClientError, EventDecodeError) as e:
                logger.error("Volume scan of %s stopped at page %d: %s", marketplace.name, page, e)
                break
            if not batch:
                break
            events.extend(batch)
            last_version = batch[-1].transaction_version
            if last_version is None:
                break
            before_version = last_version
        return events

    @staticmethod
    def _sale_sample(marketplace: Marketplace, event: MarketplaceEvent) -> SaleSample | None:
        if event.kind != EventKind.FILL:
            return None
        raw = event.raw_price(*marketplace.price_fields)
        if raw is None:
            return None
        identity = event.token_identity
        if identity is None:
            return None
        try:
            price = parse_octas(raw)
        except ValueError:
            warnings.warn(
                f"Ignoring {marketplace.name} sale with non-numeric price {raw!r}",
                DataIntegrityWarning,
                stacklevel=2,
            )
            return None
        creator_address, collection_name, _ = identity
        return SaleSample(
            creator_address=creator_address,
            collection_name=collection_name,
            price=price,
            marketplace=marketplace.name,
        )

    async def build_collection(self, candidate: VolumeCandidate) -> TrackedCollectionDTO:
        """Build a new, not yet caught up collection for a candidate.

        Description, supply, image and gallery come from the creator's
        current tokens; without metadata the supply stays 0.
        """
        name = candidate.collection_name
        chain = self._settings.chain
        stats = CollectionStats(floor_price=Decimal("0"))
        collection = TrackedCollectionDTO(
            verified_creator_address=candidate.creator_address,
            name=name,
            lowercase_name=name.lower(),
            slug=make_slug(name, chain),
            chain=chain,
            active=True,
            caught_up_txn=False,
        )

        metadata = await self._metadata.get_collection_metadata(candidate.creator_address)
        if metadata is not None:
            collection.description = metadata.description or ""
            collection.image_url = metadata.image_url
            collection.gallery = list(metadata.gallery)
            stats = CollectionStats(floor_price=Decimal("0"), total_supply=metadata.total_supply)

        collection.stats = stats.to_dict()
        collection.stats_secondary = SecondaryStats().to_dict()
        return collection

    async def discover(self) -> SyncRunResult:
        """Add the top-volume creators that are not tracked yet.

        Returns:
            SyncRunResult where ``collections_processed`` counts inserted
            collections and ``collections_skipped`` counts candidates that
            were already tracked or reported no supply.
        """
        result = SyncRunResult()
        candidates = rank_by_volume(await self.scan_recent_sales(), self._settings.discovery_top_n)
        logger.info("Discovery candidates: %s", [c.collection_name for c in candidates])

        for candidate in candidates:
            try:
                if await self._is_tracked(candidate.creator_address):
                    result.collections_skipped += 1
                    continue

                # Metadata lookups go over HTTP, so no session is held here
                collection = await self.build_collection(candidate)
                supply = CollectionStats.from_dict(collection.stats).total_supply
                if supply <= 0:
                    logger.info(
                        "Skipped %s (%s): zero supply",
                        collection.name,
                        collection.verified_creator_address,
                    )
                    result.collections_skipped += 1
                    continue

                async with self._database.session() as session:
                    repo = CollectionRepository(session)
                    if await repo.get_by_creator(candidate.creator_address) is not None:
                        result.collections_skipped += 1
                        continue
                    await repo.insert(collection)
            except SQLAlchemyError as e:
                logger.error("Failed to add collection %s: %s", candidate.collection_name, e)
                result.collections_failed += 1
                continue

            logger.info("Added collection %s", candidate.collection_name)
            result.collections_processed += 1

        return result

    async def _is_tracked(self, creator_address: str) -> bool:
        async with self._database.session() as session:
            existing = await CollectionRepository(session).get_by_creator(creator_address)
        return existing is not None
