"""Best-effort NFT metadata and image lookups with Redis caching.

Image URLs are resolved through the token's metadata URI and cached in
Redis (cache-first). Every failure degrades to None; nothing here is
allowed to fail a sync run.
"""

import logging

import httpx
from redis.asyncio import Redis

from .graphql_client import AptosIndexerClient, IndexerClientError
from .models import CollectionMetadata, EventDecodeError, TokenData

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"
DEFAULT_CACHE_TTL_SECONDS = 600  # 10 minutes
DEFAULT_REDIS_KEY_PREFIX = "aptos:image:"
IPFS_SCHEME = "ipfs://"


def rewrite_ipfs(uri: str | None, gateway: str = DEFAULT_IPFS_GATEWAY) -> str | None:
    """Rewrite an ipfs:// URI onto an HTTP gateway; other URIs pass through."""
    if not uri:
        return None
    return uri.replace(IPFS_SCHEME, gateway)


class NftMetadataFetcher:
    """Resolves token images and collection metadata.

    Example:
        ```python
        fetcher = NftMetadataFetcher(indexer, http_client, redis=redis)
        image = await fetcher.get_token_image("0xhash...")
        metadata = await fetcher.get_collection_metadata("0xcreator...")
        ```
    """

    def __init__(
        self,
        indexer: AptosIndexerClient,
        http_client: httpx.AsyncClient,
        *,
        redis: Redis | None = None,
        ipfs_gateway: str = DEFAULT_IPFS_GATEWAY,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
    ) -> None:
        """Initialize the metadata fetcher.

        Args:
            indexer: Indexer client used to look up metadata URIs.
            http_client: HTTP client used to download metadata JSON.
            redis: Optional Redis client for caching image URLs.
            ipfs_gateway: Gateway prefix replacing ``ipfs://``.
            cache_ttl_seconds: TTL for cached image URLs.
            key_prefix: Redis key prefix for image URLs.
        """
        self._indexer = indexer
        self._http = http_client
        self._redis = redis
        self._gateway = ipfs_gateway
        self._cache_ttl = cache_ttl_seconds
        self._key_prefix = key_prefix

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.setex(key, self._cache_ttl, value)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def image_from_metadata_uri(self, metadata_uri: str | None) -> str | None:
        """Download a metadata document and return its image URL.

        Args:
            metadata_uri: URI of the token or collection metadata JSON.

        Returns:
            The gateway-rewritten ``image`` field, or None.
        """
        url = rewrite_ipfs(metadata_uri, self._gateway)
        if not url or not url.startswith(("http://", "https://")):
            return None
        try:
            response = await self._http.get(url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("Metadata fetch failed for %s: %s", url, e)
            return None
        if response.status_code != 200:
            return None
        try:
            document = response.json()
        except ValueError:
            return None
        if not isinstance(document, dict) or not document.get("image"):
            return None
        return rewrite_ipfs(str(document["image"]), self._gateway)

    async def get_token_image(self, token_data_id_hash: str) -> str | None:
        """Get a token's image URL with cache-first lookup.

        Args:
            token_data_id_hash: Unique token identifier hash.

        Returns:
            Image URL, or None when it cannot be resolved.
        """
        key = f"{self._key_prefix}{token_data_id_hash}"
        cached = await self._get_cached(key)
        if cached:
            return cached

        try:
            metadata_uri = await self._indexer.get_metadata_uri(token_data_id_hash)
        except (IndexerClientError, EventDecodeError) as e:
            logger.warning("Failed to fetch metadata URI for %s: %s", token_data_id_hash, e)
            return None

        image_url = await self.image_from_metadata_uri(metadata_uri)
        if image_url:
            await self._set_cached(key, image_url)
        return image_url

    async def _gallery_image(self, token: TokenData) -> str | None:
        image = await self.image_from_metadata_uri(token.metadata_uri)
        return image or rewrite_ipfs(token.metadata_uri, self._gateway)

    async def get_collection_metadata(self, creator_address: str) -> CollectionMetadata | None:
        """Collect description, supply, image and gallery for a creator.

        The first current token supplies the collection-level fields; each
        returned token contributes one gallery image.

        Returns:
            CollectionMetadata, or None when the creator has no tokens or
            the indexer cannot be reached.
        """
        try:
            tokens = await self._indexer.get_current_token_datas(creator_address)
        except (IndexerClientError, EventDecodeError) as e:
            logger.warning("Failed to fetch token datas for %s: %s", creator_address, e)
            return None
        if not tokens:
            return None

        collection = tokens[0].collection
        image_url: str | None = None
        if collection is not None:
            image_url = await self.image_from_metadata_uri(collection.metadata_uri)
            image_url = image_url or rewrite_ipfs(collection.metadata_uri, self._gateway)

        gallery: list[str] = []
        for token in tokens:
            image = await self._gallery_image(token)
            if image:
                gallery.append(image)

        return CollectionMetadata(
            description=collection.description if collection else "",
            total_supply=collection.supply if collection else 0,
            image_url=image_url,
            gallery=tuple(gallery),
        )
