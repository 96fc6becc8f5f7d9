"""Reconciliation engine - classify, price and fold events into the catalog."""

from aptos_nft_sync.reconciler.classifier import Classification, classify, latest_per_token
from aptos_nft_sync.reconciler.models import (
    STEADY_SYNC_JOB,
    ActivityInsert,
    CollectionSyncBatch,
    CollectionSyncState,
    CommitError,
    DataIntegrityWarning,
    ListingDelete,
    ListingUpsert,
    PriceResolution,
    SyncCursor,
    SyncRunResult,
    WatermarkUpdate,
)
from aptos_nft_sync.reconciler.orchestrator import CatalogSyncOrchestrator, FetchPlan, SyncMode
from aptos_nft_sync.reconciler.price_resolver import PriceResolver

__all__ = [
    # Classifier
    "Classification",
    "classify",
    "latest_per_token",
    # Models
    "STEADY_SYNC_JOB",
    "ActivityInsert",
    "CollectionSyncBatch",
    "CollectionSyncState",
    "CommitError",
    "DataIntegrityWarning",
    "ListingDelete",
    "ListingUpsert",
    "PriceResolution",
    "SyncCursor",
    "SyncRunResult",
    "WatermarkUpdate",
    # Orchestrator
    "CatalogSyncOrchestrator",
    "FetchPlan",
    "SyncMode",
    # Price Resolver
    "PriceResolver",
]
