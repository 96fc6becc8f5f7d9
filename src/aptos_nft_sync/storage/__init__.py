"""Persistence layer - collections, listings, activities and sync cursors."""

from aptos_nft_sync.storage.database import DatabaseManager, init_async_db
from aptos_nft_sync.storage.models import (
    ActivityModel,
    Base,
    ListingModel,
    SyncCursorModel,
    TrackedCollectionModel,
)
from aptos_nft_sync.storage.repos import (
    ActivityDTO,
    ActivityRepository,
    BatchOutcome,
    CatalogWriter,
    CollectionRepository,
    ListingDTO,
    ListingRepository,
    SyncCursorDTO,
    SyncCursorRepository,
    TrackedCollectionDTO,
)

__all__ = [
    # Database
    "DatabaseManager",
    "init_async_db",
    # Models
    "ActivityModel",
    "Base",
    "ListingModel",
    "SyncCursorModel",
    "TrackedCollectionModel",
    # Repositories
    "ActivityDTO",
    "ActivityRepository",
    "BatchOutcome",
    "CatalogWriter",
    "CollectionRepository",
    "ListingDTO",
    "ListingRepository",
    "SyncCursorDTO",
    "SyncCursorRepository",
    "TrackedCollectionDTO",
]
