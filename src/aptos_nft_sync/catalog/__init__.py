"""Catalog maintenance - stats, owner counts, collection discovery and wallet views."""

from aptos_nft_sync.catalog.bootstrap import (
    CollectionBootstrap,
    SaleSample,
    make_slug,
    rank_by_volume,
)
from aptos_nft_sync.catalog.models import (
    CollectionStats,
    ListStatus,
    SecondaryStats,
    VolumeCandidate,
    WalletCollection,
    WalletGalleryItem,
    WalletSnapshot,
)
from aptos_nft_sync.catalog.stats import (
    OwnerCountRefresher,
    StatsAggregator,
    compute_collection_stats,
    project_secondary,
)
from aptos_nft_sync.catalog.wallet import WalletAggregator

__all__ = [
    # Bootstrap
    "CollectionBootstrap",
    "SaleSample",
    "make_slug",
    "rank_by_volume",
    # Models
    "CollectionStats",
    "ListStatus",
    "SecondaryStats",
    "VolumeCandidate",
    "WalletCollection",
    "WalletGalleryItem",
    "WalletSnapshot",
    # Stats
    "OwnerCountRefresher",
    "StatsAggregator",
    "compute_collection_stats",
    "project_secondary",
    # Wallet
    "WalletAggregator",
]
