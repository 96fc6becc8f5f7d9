"""Repository pattern implementations for data access.

This module provides data access abstractions for tracked collections,
listings, sale activities and sync cursors, plus the CatalogWriter that
applies one collection's sync batch inside the caller's transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, or_, select, tuple_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from aptos_nft_sync.storage.models import (
    ActivityModel,
    ListingModel,
    SyncCursorModel,
    TrackedCollectionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from aptos_nft_sync.reconciler.models import (
        ActivityInsert,
        CollectionSyncBatch,
        ListingUpsert,
    )

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _dialect_insert(session: AsyncSession) -> Any:
    """Pick the dialect-specific INSERT construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


@dataclass
class TrackedCollectionDTO:
    """Data transfer object for tracked collections."""

    verified_creator_address: str
    name: str
    slug: str
    id: str | None = None
    chain: str = "aptos"
    lowercase_name: str = ""
    description: str = ""
    image_url: str | None = None
    gallery: list[str] = field(default_factory=list)
    active: bool = True
    caught_up_txn: bool = False
    last_transaction_version: int | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    stats_secondary: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    last_updated_listings_at: datetime | None = None
    last_updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TrackedCollectionModel) -> TrackedCollectionDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            verified_creator_address=model.verified_creator_address,
            name=model.name,
            slug=model.slug,
            chain=model.chain,
            lowercase_name=model.lowercase_name,
            description=model.description,
            image_url=model.image_url,
            gallery=list(model.gallery or []),
            active=model.active,
            caught_up_txn=model.caught_up_txn,
            last_transaction_version=model.last_transaction_version,
            stats=dict(model.stats or {}),
            stats_secondary=dict(model.stats_secondary or {}),
            created_at=_as_utc(model.created_at),
            last_updated_listings_at=_as_utc(model.last_updated_listings_at),
            last_updated_at=_as_utc(model.last_updated_at),
        )


@dataclass
class ListingDTO:
    """Data transfer object for active listings."""

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
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ListingModel) -> ListingDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            token_data_id_hash=model.token_data_id_hash,
            collection_id=model.collection_id,
            name=model.name,
            price=Decimal(model.price),
            marketplace=model.marketplace,
            event_type=model.event_type,
            transaction_version=model.transaction_version,
            from_address=model.from_address,
            transaction_timestamp=_as_utc(model.transaction_timestamp),
            image_url=model.image_url,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class ActivityDTO:
    """Data transfer object for sale activities."""

    transaction_version: int
    token_data_id_hash: str
    collection_id: str
    name: str
    price: Decimal
    marketplace: str
    event_type: str
    collection_name: str = ""
    slug: str = ""
    creator_address: str = ""
    to_address: str | None = None
    block_datetime: datetime | None = None
    image_url: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ActivityModel) -> ActivityDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            transaction_version=model.transaction_version,
            token_data_id_hash=model.token_data_id_hash,
            collection_id=model.collection_id,
            name=model.name,
            price=Decimal(model.price),
            marketplace=model.marketplace,
            event_type=model.event_type,
            collection_name=model.collection_name,
            slug=model.slug,
            creator_address=model.creator_address,
            to_address=model.to_address,
            block_datetime=_as_utc(model.block_datetime),
            image_url=model.image_url,
            created_at=_as_utc(model.created_at),
        )


@dataclass
class SyncCursorDTO:
    """Data transfer object for a job's persisted cursor."""

    job_name: str
    start_after: str | None
    limit: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SyncCursorModel) -> SyncCursorDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            job_name=model.job_name,
            start_after=model.start_after,
            limit=model.page_limit,
            updated_at=_as_utc(model.updated_at),
        )


@dataclass(frozen=True)
class BatchOutcome:
    """Rows touched when a sync batch was applied."""

    listings_upserted: int = 0
    listings_deleted: int = 0
    activities_inserted: int = 0
    watermark_advanced: bool = False
    caught_up: bool = False


class CollectionRepository:
    """Repository for tracked collection data access."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get_by_id(self, collection_id: str) -> TrackedCollectionDTO | None:
        result = await self.session.execute(
            select(TrackedCollectionModel).where(TrackedCollectionModel.id == collection_id)
        )
        model = result.scalar_one_or_none()
        return TrackedCollectionDTO.from_model(model) if model else None

    async def get_by_creator(self, verified_creator_address: str) -> TrackedCollectionDTO | None:
        """Get a collection by its verified creator address.

        Args:
            verified_creator_address: Creator address identifying the collection.

        Returns:
            TrackedCollectionDTO if found, None otherwise.
        """
        result = await self.session.execute(
            select(TrackedCollectionModel)
            .where(TrackedCollectionModel.verified_creator_address == verified_creator_address)
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TrackedCollectionDTO.from_model(model) if model else None

    async def list_active_page(
        self,
        chain: str,
        *,
        start_after: str | None,
        limit: int,
    ) -> list[TrackedCollectionDTO]:
        """Get one cursor page of active collections, ordered by id descending.

        Args:
            chain: Chain tag to filter on.
            start_after: Last id of the previous page, None for the first page.
            limit: Page size.

        Returns:
            Up to ``limit`` collections whose id sorts after ``start_after``.
        """
        stmt = select(TrackedCollectionModel).where(
            TrackedCollectionModel.active.is_(True),
            TrackedCollectionModel.chain == chain,
        )
        if start_after is not None:
            stmt = stmt.where(TrackedCollectionModel.id < start_after)
        result = await self.session.execute(
            stmt.order_by(TrackedCollectionModel.id.desc()).limit(limit)
        )
        return [TrackedCollectionDTO.from_model(m) for m in result.scalars().all()]

    async def list_active(
        self,
        chain: str,
        *,
        caught_up: bool | None = None,
    ) -> list[TrackedCollectionDTO]:
        """Get all active collections of a chain, optionally by catch-up flag."""
        stmt = select(TrackedCollectionModel).where(
            TrackedCollectionModel.active.is_(True),
            TrackedCollectionModel.chain == chain,
        )
        if caught_up is not None:
            stmt = stmt.where(TrackedCollectionModel.caught_up_txn.is_(caught_up))
        result = await self.session.execute(stmt.order_by(TrackedCollectionModel.id.desc()))
        return [TrackedCollectionDTO.from_model(m) for m in result.scalars().all()]

    async def get_oldest_not_caught_up(self, chain: str) -> TrackedCollectionDTO | None:
        """Get the oldest active collection still catching up."""
        result = await self.session.execute(
            select(TrackedCollectionModel)
            .where(
                TrackedCollectionModel.active.is_(True),
                TrackedCollectionModel.chain == chain,
                TrackedCollectionModel.caught_up_txn.is_(False),
            )
            .order_by(TrackedCollectionModel.created_at.asc(), TrackedCollectionModel.id.asc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TrackedCollectionDTO.from_model(model) if model else None

    async def insert(self, dto: TrackedCollectionDTO) -> TrackedCollectionDTO:
        """Insert a new tracked collection.

        Args:
            dto: Collection data; ``id`` is generated when absent.

        Returns:
            The stored collection.

        Raises:
            IntegrityError if the creator address is already tracked.
        """
        model = TrackedCollectionModel(
            verified_creator_address=dto.verified_creator_address,
            name=dto.name,
            lowercase_name=dto.lowercase_name or dto.name.lower(),
            slug=dto.slug,
            chain=dto.chain,
            description=dto.description,
            image_url=dto.image_url,
            gallery=list(dto.gallery),
            active=dto.active,
            caught_up_txn=dto.caught_up_txn,
            last_transaction_version=dto.last_transaction_version,
            stats=dict(dto.stats),
            stats_secondary=dict(dto.stats_secondary),
        )
        if dto.id:
            model.id = dto.id
        if dto.created_at:
            model.created_at = dto.created_at
        self.session.add(model)
        await self.session.flush()
        return TrackedCollectionDTO.from_model(model)

    async def advance_watermark(self, collection_id: str, version: int) -> bool:
        """Raise the watermark to ``version`` if it is higher than the stored one.

        The conditional update keeps the watermark monotonic even when two
        writers race.

        Returns:
            True if the watermark moved.
        """
        result = await self.session.execute(
            update(TrackedCollectionModel)
            .where(
                TrackedCollectionModel.id == collection_id,
                or_(
                    TrackedCollectionModel.last_transaction_version.is_(None),
                    TrackedCollectionModel.last_transaction_version < version,
                ),
            )
            .values(last_transaction_version=version)
        )
        return result.rowcount > 0

    async def mark_caught_up(self, collection_id: str) -> bool:
        """Flip caught_up_txn false -> true; never the other way.

        Returns:
            True if this call performed the transition.
        """
        result = await self.session.execute(
            update(TrackedCollectionModel)
            .where(
                TrackedCollectionModel.id == collection_id,
                TrackedCollectionModel.caught_up_txn.is_(False),
            )
            .values(caught_up_txn=True)
        )
        return result.rowcount > 0

    async def touch_listings_updated(self, collection_id: str, at: datetime) -> None:
        await self.session.execute(
            update(TrackedCollectionModel)
            .where(TrackedCollectionModel.id == collection_id)
            .values(last_updated_listings_at=at)
        )

    async def replace_stats(
        self,
        collection_id: str,
        stats: dict[str, Any],
        stats_secondary: dict[str, Any],
        at: datetime,
    ) -> bool:
        """Overwrite both stats documents wholesale.

        Returns:
            True if the collection exists.
        """
        result = await self.session.execute(
            update(TrackedCollectionModel)
            .where(TrackedCollectionModel.id == collection_id)
            .values(stats=dict(stats), stats_secondary=dict(stats_secondary), last_updated_at=at)
        )
        return result.rowcount > 0

    async def set_num_owners(self, collection_id: str, num_owners: int) -> bool:
        """Set ``stats.num_owners`` leaving the other stats untouched.

        Returns:
            True if updated, False if the collection was not found.
        """
        result = await self.session.execute(
            select(TrackedCollectionModel).where(TrackedCollectionModel.id == collection_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return False
        # JSON columns only persist on reassignment
        model.stats = {**(model.stats or {}), "num_owners": num_owners}
        await self.session.flush()
        return True

    async def deactivate(self, collection_id: str) -> bool:
        """Soft-delete a collection.

        Returns:
            True if updated, False if not found.
        """
        result = await self.session.execute(
            update(TrackedCollectionModel)
            .where(TrackedCollectionModel.id == collection_id)
            .values(active=False)
        )
        return result.rowcount > 0


class ListingRepository:
    """Repository for active listing data access."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, token_data_id_hash: str) -> ListingDTO | None:
        result = await self.session.execute(
            select(ListingModel).where(ListingModel.token_data_id_hash == token_data_id_hash)
        )
        model = result.scalar_one_or_none()
        return ListingDTO.from_model(model) if model else None

    async def existing_tokens(self, token_hashes: Iterable[str]) -> set[str]:
        """Return the subset of token hashes that currently have a listing."""
        hashes = list(set(token_hashes))
        if not hashes:
            return set()
        result = await self.session.execute(
            select(ListingModel.token_data_id_hash).where(
                ListingModel.token_data_id_hash.in_(hashes)
            )
        )
        return set(result.scalars().all())

    async def list_by_collection(self, collection_id: str) -> list[ListingDTO]:
        """Get a collection's listings, cheapest first.

        Args:
            collection_id: Owning collection id.

        Returns:
            ListingDTOs ordered by price ascending.
        """
        result = await self.session.execute(
            select(ListingModel)
            .where(ListingModel.collection_id == collection_id)
            .order_by(ListingModel.price.asc())
        )
        return [ListingDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_seller(self, from_address: str, limit: int = 100) -> list[ListingDTO]:
        """Get the listings created by a seller wallet.

        Args:
            from_address: Seller address.
            limit: Maximum number of results.

        Returns:
            ListingDTOs ordered by most recent listing version first.
        """
        result = await self.session.execute(
            select(ListingModel)
            .where(ListingModel.from_address == from_address)
            .order_by(ListingModel.transaction_version.desc())
            .limit(limit)
        )
        return [ListingDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, intent: ListingUpsert, now: datetime | None = None) -> None:
        """Insert a listing or merge it into the token's existing one.

        An existing image is kept when the new listing carries none, and a
        listing never overwrites one with a higher transaction version.
        """
        now = now or datetime.now(UTC)
        insert = _dialect_insert(self.session)
        stmt = insert(ListingModel).values(
            token_data_id_hash=intent.token_data_id_hash,
            collection_id=intent.collection_id,
            name=intent.name,
            price=intent.price,
            marketplace=intent.marketplace,
            event_type=intent.event_type,
            transaction_version=intent.transaction_version,
            from_address=intent.from_address,
            transaction_timestamp=intent.transaction_timestamp,
            image_url=intent.image_url,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_data_id_hash"],
            set_={
                "collection_id": stmt.excluded.collection_id,
                "name": stmt.excluded.name,
                "price": stmt.excluded.price,
                "marketplace": stmt.excluded.marketplace,
                "event_type": stmt.excluded.event_type,
                "transaction_version": stmt.excluded.transaction_version,
                "from_address": stmt.excluded.from_address,
                "transaction_timestamp": stmt.excluded.transaction_timestamp,
                "image_url": func.coalesce(stmt.excluded.image_url, ListingModel.image_url),
                "updated_at": stmt.excluded.updated_at,
            },
            where=ListingModel.transaction_version <= stmt.excluded.transaction_version,
        )
        await self.session.execute(stmt)

    async def delete_if_older(self, token_data_id_hash: str, sale_version: int) -> bool:
        """Delete a token's listing if it was placed before ``sale_version``.

        Returns:
            True if a listing was deleted.
        """
        result = await self.session.execute(
            delete(ListingModel).where(
                ListingModel.token_data_id_hash == token_data_id_hash,
                ListingModel.transaction_version < sale_version,
            )
        )
        return result.rowcount > 0


class ActivityRepository:
    """Repository for sale activity data access.

    Activities are append-only; there is no update or delete here.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def exists(self, transaction_version: int, token_data_id_hash: str) -> bool:
        result = await self.session.execute(
            select(ActivityModel.id).where(
                ActivityModel.transaction_version == transaction_version,
                ActivityModel.token_data_id_hash == token_data_id_hash,
            )
        )
        return result.first() is not None

    async def existing_keys(self, keys: Iterable[tuple[int, str]]) -> set[tuple[int, str]]:
        """Return the (transaction_version, token_data_id_hash) pairs already stored."""
        pairs = list(set(keys))
        if not pairs:
            return set()
        result = await self.session.execute(
            select(ActivityModel.transaction_version, ActivityModel.token_data_id_hash).where(
                tuple_(ActivityModel.transaction_version, ActivityModel.token_data_id_hash).in_(
                    pairs
                )
            )
        )
        return {(row[0], row[1]) for row in result.all()}

    async def insert_if_absent(self, intent: ActivityInsert, now: datetime | None = None) -> bool:
        """Insert a sale activity unless its (version, token) pair exists.

        Returns:
            True if a row was inserted.
        """
        insert = _dialect_insert(self.session)
        stmt = insert(ActivityModel).values(
            transaction_version=intent.transaction_version,
            token_data_id_hash=intent.token_data_id_hash,
            collection_id=intent.collection_id,
            collection_name=intent.collection_name,
            slug=intent.slug,
            creator_address=intent.creator_address,
            name=intent.name,
            price=intent.price,
            marketplace=intent.marketplace,
            event_type=intent.event_type,
            to_address=intent.to_address,
            block_datetime=intent.block_datetime,
            image_url=intent.image_url,
            created_at=now or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["transaction_version", "token_data_id_hash"]
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def list_recent_for_collection(
        self, collection_id: str, limit: int = 200
    ) -> list[ActivityDTO]:
        """Get a collection's most recent activities.

        Args:
            collection_id: Owning collection id.
            limit: Maximum number of results.

        Returns:
            ActivityDTOs ordered by block time descending.
        """
        result = await self.session.execute(
            select(ActivityModel)
            .where(ActivityModel.collection_id == collection_id)
            .order_by(ActivityModel.block_datetime.desc(), ActivityModel.transaction_version.desc())
            .limit(limit)
        )
        return [ActivityDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_token(self, token_data_id_hash: str) -> list[ActivityDTO]:
        result = await self.session.execute(
            select(ActivityModel)
            .where(ActivityModel.token_data_id_hash == token_data_id_hash)
            .order_by(ActivityModel.transaction_version.asc())
        )
        return [ActivityDTO.from_model(m) for m in result.scalars().all()]


class SyncCursorRepository:
    """Repository for per-job sync cursors."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, job_name: str) -> SyncCursorDTO | None:
        result = await self.session.execute(
            select(SyncCursorModel).where(SyncCursorModel.job_name == job_name)
        )
        model = result.scalar_one_or_none()
        return SyncCursorDTO.from_model(model) if model else None

    async def save(self, job_name: str, start_after: str | None, limit: int) -> None:
        """Insert or replace a job's cursor."""
        now = datetime.now(UTC)
        insert = _dialect_insert(self.session)
        stmt = insert(SyncCursorModel).values(
            job_name=job_name,
            start_after=start_after,
            page_limit=limit,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["job_name"],
            set_={
                "start_after": stmt.excluded.start_after,
                "page_limit": stmt.excluded.page_limit,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)


class CatalogWriter:
    """Applies a CollectionSyncBatch inside the caller's transaction.

    Order: stale listing deletes, listing upserts, activity inserts, then
    the watermark and catch-up flag. The caller commits or rolls back.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.collections = CollectionRepository(session)
        self.listings = ListingRepository(session)
        self.activities = ActivityRepository(session)

    async def apply(self, batch: CollectionSyncBatch) -> BatchOutcome:
        """Apply every intent of a batch.

        Args:
            batch: Write intents for one collection.

        Returns:
            BatchOutcome with the rows touched.
        """
        now = datetime.now(UTC)

        deleted = 0
        for listing_delete in batch.listing_deletes:
            if await self.listings.delete_if_older(
                listing_delete.token_data_id_hash, listing_delete.sale_version
            ):
                deleted += 1

        for upsert in batch.listing_upserts:
            await self.listings.upsert(upsert, now)

        inserted = 0
        if batch.activity_inserts:
            existing = await self.activities.existing_keys(
                (a.transaction_version, a.token_data_id_hash) for a in batch.activity_inserts
            )
            for activity in batch.activity_inserts:
                key = (activity.transaction_version, activity.token_data_id_hash)
                if key in existing:
                    continue
                existing.add(key)
                if await self.activities.insert_if_absent(activity, now):
                    inserted += 1

        advanced = False
        caught_up = False
        watermark = batch.watermark
        if watermark is not None:
            if watermark.last_transaction_version is not None:
                advanced = await self.collections.advance_watermark(
                    watermark.collection_id, watermark.last_transaction_version
                )
            if watermark.mark_caught_up:
                caught_up = await self.collections.mark_caught_up(watermark.collection_id)
            await self.collections.touch_listings_updated(
                watermark.collection_id, watermark.synced_at
            )

        await self.session.flush()
        logger.debug(
            "Applied batch for %s: %d deleted, %d upserted, %d activities, advanced=%s",
            batch.collection_id,
            deleted,
            len(batch.listing_upserts),
            inserted,
            advanced,
        )
        return BatchOutcome(
            listings_upserted=len(batch.listing_upserts),
            listings_deleted=deleted,
            activities_inserted=inserted,
            watermark_advanced=advanced,
            caught_up=caught_up,
        )
