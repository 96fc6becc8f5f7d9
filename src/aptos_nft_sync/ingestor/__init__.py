"""Data ingestion layer - Aptos indexer events, metadata and quotes."""

from aptos_nft_sync.ingestor.event_source import EventSource
from aptos_nft_sync.ingestor.graphql_client import (
    AptosIndexerClient,
    IndexerClientError,
    RateLimiter,
    RetryError,
    RetryPolicy,
    TransportError,
)
from aptos_nft_sync.ingestor.marketplaces import (
    PRICE_DECIMALS,
    SUPPORTED_MARKETPLACES,
    EventKind,
    Marketplace,
    event_kind_for,
    short_event_type,
)
from aptos_nft_sync.ingestor.metadata import NftMetadataFetcher, rewrite_ipfs
from aptos_nft_sync.ingestor.models import (
    CollectionData,
    CollectionMetadata,
    ConversionRates,
    EventDecodeError,
    FetchResult,
    MarketplaceEvent,
    TokenActivity,
    TokenData,
    WalletToken,
    parse_octas,
)
from aptos_nft_sync.ingestor.quotes import ConversionRateSource

__all__ = [
    # Indexer Client
    "AptosIndexerClient",
    "IndexerClientError",
    "RateLimiter",
    "RetryError",
    "RetryPolicy",
    "TransportError",
    # Event Source
    "EventSource",
    # Marketplaces
    "PRICE_DECIMALS",
    "SUPPORTED_MARKETPLACES",
    "EventKind",
    "Marketplace",
    "event_kind_for",
    "short_event_type",
    # Metadata
    "NftMetadataFetcher",
    "rewrite_ipfs",
    # Models
    "CollectionData",
    "CollectionMetadata",
    "ConversionRates",
    "EventDecodeError",
    "FetchResult",
    "MarketplaceEvent",
    "TokenActivity",
    "TokenData",
    "WalletToken",
    "parse_octas",
    # Quotes
    "ConversionRateSource",
]
