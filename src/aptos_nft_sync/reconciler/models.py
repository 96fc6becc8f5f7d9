"""Data models for the reconciler module.

The orchestrator never writes directly: it turns one collection's events
into a CollectionSyncBatch of intents that is committed atomically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from aptos_nft_sync.ingestor.marketplaces import EventKind
from aptos_nft_sync.storage.repos import BatchOutcome

STEADY_SYNC_JOB = "listings-sync"


class CommitError(Exception):
    """Raised when a collection's sync batch cannot be committed."""

    def __init__(self, collection_id: str, cause: Exception | None = None) -> None:
        super().__init__(f"Failed to commit sync batch for collection {collection_id}: {cause}")
        self.collection_id = collection_id
        self.cause = cause


class DataIntegrityWarning(UserWarning):
    """Issued through ``warnings.warn`` when a candidate is discarded for unusable data.

    Processing continues; the CLI routes warnings into the log.
    """


class CollectionSyncState(str, Enum):
    """Catch-up state of a tracked collection."""

    NEW = "new"
    CATCHING_UP = "catching_up"
    STEADY = "steady"

    @classmethod
    def from_flags(
        cls, caught_up_txn: bool, last_transaction_version: int | None
    ) -> CollectionSyncState:
        """Derive the state from the persisted flags."""
        if caught_up_txn:
            return cls.STEADY
        if last_transaction_version is None:
            return cls.NEW
        return cls.CATCHING_UP


@dataclass(frozen=True)
class PriceResolution:
    """Outcome of resolving the price of one event.

    ``price is None`` means unresolved. Raw zero prices count as absent, so a
    resolved price is always positive.
    """

    price: Decimal | None
    marketplace: str | None = None
    event_type: str | None = None
    kind: EventKind = EventKind.UNKNOWN

    @classmethod
    def unresolved(cls) -> PriceResolution:
        return cls(price=None)

    @property
    def is_resolved(self) -> bool:
        return self.price is not None


@dataclass(frozen=True)
class SyncCursor:
    """Explicit pagination cursor of the steady-state listings sync.

    ``start_after`` is the last collection id processed; None starts
    from the top of the id-descending ordering.
    """

    job_name: str = STEADY_SYNC_JOB
    start_after: str | None = None
    limit: int = 10

    def advanced(self, last_processed_id: str | None) -> SyncCursor:
        """Return the cursor to use on the next run."""
        return SyncCursor(job_name=self.job_name, start_after=last_processed_id, limit=self.limit)


@dataclass(frozen=True)
class ListingUpsert:
    """Insert or merge the active listing of a token."""

    token_data_id_hash: str
    collection_id: str
    name: str
    price: Decimal
    marketplace: str
    event_type: str
    transaction_version: int
    from_address: str | None = None
    transaction_timestamp: datetime | None = None
    image_url: str | None = None


@dataclass(frozen=True)
class ListingDelete:
    """Delete a token's listing if it predates a sale at ``sale_version``."""

    token_data_id_hash: str
    sale_version: int


@dataclass(frozen=True)
class ActivityInsert:
    """Insert a sale activity unless (version, token) already exists."""

    transaction_version: int
    token_data_id_hash: str
    collection_id: str
    collection_name: str
    slug: str
    creator_address: str
    name: str
    price: Decimal
    marketplace: str
    event_type: str
    to_address: str | None = None
    block_datetime: datetime | None = None
    image_url: str | None = None


@dataclass(frozen=True)
class WatermarkUpdate:
    """Advance a collection's watermark and optionally mark it caught up.

    ``last_transaction_version`` of None leaves the watermark untouched.
    """

    collection_id: str
    last_transaction_version: int | None
    mark_caught_up: bool
    synced_at: datetime


@dataclass
class CollectionSyncBatch:
    """All write intents produced for one collection in one run."""

    collection_id: str
    listing_upserts: list[ListingUpsert] = field(default_factory=list)
    listing_deletes: list[ListingDelete] = field(default_factory=list)
    activity_inserts: list[ActivityInsert] = field(default_factory=list)
    watermark: WatermarkUpdate | None = None

    @property
    def intent_count(self) -> int:
        return len(self.listing_upserts) + len(self.listing_deletes) + len(self.activity_inserts)


@dataclass
class SyncRunResult:
    """Summary of one orchestrator or aggregator run."""

    success: bool = True
    error: str | None = None
    collections_processed: int = 0
    collections_failed: int = 0
    collections_skipped: int = 0
    cursor: SyncCursor | None = None
    outcomes: dict[str, BatchOutcome] = field(default_factory=dict)
