"""Wallet holdings: on-chain tokens merged with the wallet's active listings.

Tokens listed on a marketplace sit in escrow rather than in the wallet, so
the seller's rows from the listings table are added back as ``listed``
gallery items. Each gallery item counts once toward its collection.
"""

import asyncio
import logging

from aptos_nft_sync.catalog.bootstrap import make_slug
from aptos_nft_sync.catalog.models import ListStatus, WalletGalleryItem, WalletSnapshot
from aptos_nft_sync.config import SyncSettings
from aptos_nft_sync.ingestor.graphql_client import (
    AptosIndexerClient,
    IndexerClientError,
    RetryError,
    RetryPolicy,
)
from aptos_nft_sync.ingestor.metadata import DEFAULT_IPFS_GATEWAY, NftMetadataFetcher, rewrite_ipfs
from aptos_nft_sync.ingestor.models import EventDecodeError, WalletToken
from aptos_nft_sync.storage.database import DatabaseManager
from aptos_nft_sync.storage.repos import (
    CollectionRepository,
    ListingDTO,
    ListingRepository,
    TrackedCollectionDTO,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".gif", ".jpg", ".jpeg")
DEFAULT_LISTING_LIMIT = 500


class WalletAggregator:
    """Builds the collection list and gallery of a wallet.

    Example:
        ```python
        aggregator = WalletAggregator(database, indexer, metadata)
        snapshot = await aggregator.aggregate("0xwallet...")
        ```
    """

    def __init__(
        self,
        database: DatabaseManager,
        client: AptosIndexerClient,
        metadata: NftMetadataFetcher,
        *,
        settings: SyncSettings | None = None,
        ipfs_gateway: str = DEFAULT_IPFS_GATEWAY,
        listing_limit: int = DEFAULT_LISTING_LIMIT,
    ) -> None:
        self._database = database
        self._client = client
        self._metadata = metadata
        self._settings = settings or SyncSettings()
        self._gateway = ipfs_gateway
        self._listing_limit = listing_limit
        self._retry_policy = RetryPolicy(
            max_retries=self._settings.wallet_max_retries,
            base_delay=self._settings.wallet_retry_base_delay,
        )

    async def fetch_tokens(self, wallet: str) -> list[WalletToken]:
        """Page through the wallet's current ownerships until a short page.

        Raises:
            RetryError: If a page still fails after the configured retries.
        """
        page_size = self._settings.wallet_page_size
        tokens: list[WalletToken] = []
        offset = 0
        while True:
            page = await self._fetch_page(wallet, offset, page_size)
            tokens.extend(page)
            offset += len(page)
            logger.debug("Wallet %s: offset=%d page=%d", wallet, offset, len(page))
            if len(page) < page_size:
                return tokens

    async def _fetch_page(self, wallet: str, offset: int, limit: int) -> list[WalletToken]:
        policy = self._retry_policy
        last_exception: Exception | None = None

        for attempt in range(policy.max_retries + 1):
            try:
                return await self._client.get_wallet_tokens(wallet, offset=offset, limit=limit)
            except (IndexerClientError, EventDecodeError) as e:
                last_exception = e
                if attempt == policy.max_retries:
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Wallet page at offset %d failed (attempt %d/%d): %s. Retrying in %.1fs",
                    offset,
                    attempt + 1,
                    policy.max_retries + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

        raise RetryError(
            f"All {policy.max_retries + 1} attempts failed for wallet {wallet} at offset {offset}",
            last_exception=last_exception,
        )

    async def aggregate(self, wallet: str) -> WalletSnapshot:
        """Merge on-chain holdings and active listings of a wallet.

        Raises:
            RetryError: If the ownership pages cannot be fetched.
            SQLAlchemyError: If the catalog cannot be read.
        """
        tokens = [t for t in await self.fetch_tokens(wallet) if t.amount > 0]

        async with self._database.session() as session:
            collections = CollectionRepository(session)
            listings = await ListingRepository(session).list_by_seller(
                wallet, limit=self._listing_limit
            )
            tracked_by_creator: dict[str, TrackedCollectionDTO | None] = {}
            for creator in {t.creator_address for t in tokens if t.creator_address}:
                tracked_by_creator[creator] = await collections.get_by_creator(creator)
            listed_collections: dict[str, TrackedCollectionDTO | None] = {}
            for collection_id in {listing.collection_id for listing in listings}:
                listed_collections[collection_id] = await collections.get_by_id(collection_id)

        chain = self._settings.chain
        snapshot = WalletSnapshot(wallet=wallet)
        for token in tokens:
            tracked = tracked_by_creator.get(token.creator_address)
            slug = tracked.slug if tracked else make_slug(token.collection_name, chain)
            item = WalletGalleryItem(
                slug=slug,
                name=token.token_name or token.collection_name,
                image_url=await self._token_image(token) or "",
                mint_address=token.token_data_id,
                list_status=ListStatus.UNLISTED,
            )
            snapshot.add(item, token.collection_name, chain)

        for listing in listings:
            collection = listed_collections.get(listing.collection_id)
            if collection is None:
                logger.warning(
                    "Listing %s references unknown collection %s",
                    listing.token_data_id_hash,
                    listing.collection_id,
                )
                continue
            snapshot.add(self._listed_item(listing, collection), collection.name, chain)

        logger.info(
            "Wallet %s: %d on-chain, %d listed, %d collections",
            wallet,
            len(tokens),
            len(snapshot.gallery) - len(tokens),
            len(snapshot.collections),
        )
        return snapshot

    async def _token_image(self, token: WalletToken) -> str | None:
        # Direct image URIs skip the metadata document
        uri = token.token_uri
        if uri and uri.lower().endswith(IMAGE_EXTENSIONS):
            return rewrite_ipfs(uri, self._gateway)
        return await self._metadata.image_from_metadata_uri(uri)

    @staticmethod
    def _listed_item(listing: ListingDTO, collection: TrackedCollectionDTO) -> WalletGalleryItem:
        return WalletGalleryItem(
            slug=collection.slug,
            name=listing.name or collection.name,
            image_url=listing.image_url or "",
            mint_address=listing.token_data_id_hash,
            list_status=ListStatus.LISTED,
        )
