"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked collections, active
listings, sale activities and per-job sync cursors.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TrackedCollectionModel(Base):
    """SQLAlchemy model for tracked NFT collections.

    Holds the per-collection sync watermark, the catch-up flag and the
    embedded stats documents. Rows are soft-deactivated, never deleted.
    """

    __tablename__ = "tracked_collections"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    verified_creator_address: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    lowercase_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False, default="aptos")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    gallery: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    caught_up_txn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_transaction_version: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stats: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    stats_secondary: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_updated_listings_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_tracked_collections_active_chain", "active", "chain"),
        Index("idx_tracked_collections_created", "created_at"),
    )


class ListingModel(Base):
    """SQLAlchemy model for active listings.

    At most one row per token: the token identifier hash is the key.
    """

    __tablename__ = "listings"

    token_data_id_hash: Mapped[str] = mapped_column(String(80), primary_key=True)
    collection_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("tracked_collections.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(30, 8), nullable=False)
    marketplace: Mapped[str] = mapped_column(String(40), nullable=False)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    transaction_version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(80), nullable=True)
    transaction_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_listings_collection_price", "collection_id", "price"),
        Index("idx_listings_from_address", "from_address"),
    )


class ActivityModel(Base):
    """SQLAlchemy model for sale activities.

    Append-only: unique per (transaction_version, token_data_id_hash) and
    never updated after insert.
    """

    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    token_data_id_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    collection_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("tracked_collections.id"), nullable=False
    )
    collection_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    slug: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    creator_address: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(30, 8), nullable=False)
    marketplace: Mapped[str] = mapped_column(String(40), nullable=False)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    to_address: Mapped[str | None] = mapped_column(String(80), nullable=True)
    block_datetime: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_version", "token_data_id_hash", name="uq_activity_version_token"
        ),
        Index("idx_activities_collection_block", "collection_id", "block_datetime"),
        Index("idx_activities_token", "token_data_id_hash"),
    )


class SyncCursorModel(Base):
    """SQLAlchemy model for per-job pagination cursors (one row per job)."""

    __tablename__ = "sync_cursors"

    job_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    start_after: Mapped[str | None] = mapped_column(String(32), nullable=True)
    page_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
