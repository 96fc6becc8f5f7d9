"""Shared fixtures and payload builders."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from aptos_nft_sync.config import clear_settings_cache
from aptos_nft_sync.ingestor.marketplaces import DEPOSIT_TRANSFER_TYPE, WITHDRAW_TRANSFER_TYPE
from aptos_nft_sync.ingestor.models import MarketplaceEvent, TokenActivity
from aptos_nft_sync.storage.database import DatabaseManager
from aptos_nft_sync.storage.repos import CollectionRepository, TrackedCollectionDTO

CREATOR = "0xcreator"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    clear_settings_cache()


@pytest.fixture
async def database(tmp_path: Path) -> AsyncIterator[DatabaseManager]:
    """File-backed SQLite database shared by every session of a test."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await manager.init_schema()
    yield manager
    await manager.dispose()


async def add_collection(
    database: DatabaseManager,
    *,
    creator: str = CREATOR,
    name: str = "Aptos Monkeys",
    caught_up: bool = True,
    last_version: int | None = 1000,
    stats: dict[str, Any] | None = None,
    created_at: datetime | None = None,
    active: bool = True,
    collection_id: str | None = None,
) -> TrackedCollectionDTO:
    """Insert a tracked collection and return it."""
    async with database.session() as session:
        return await CollectionRepository(session).insert(
            TrackedCollectionDTO(
                id=collection_id,
                verified_creator_address=creator,
                name=name,
                slug=name.lower().replace(" ", "_") + "_aptos",
                caught_up_txn=caught_up,
                last_transaction_version=last_version,
                stats=stats or {},
                created_at=created_at,
                active=active,
            )
        )


def activity_node(
    token: str,
    version: int | None,
    *,
    deposit: bool = False,
    name: str | None = None,
    creator: str = CREATOR,
    timestamp: str = "2024-05-01T11:00:00",
) -> dict[str, Any]:
    """Build a raw token_activities node."""
    return {
        "creator_address": creator,
        "current_token_data": {"collection_data_id_hash": "0xcollection"},
        "from_address": "0xseller",
        "to_address": "0xbuyer",
        "token_data_id_hash": token,
        "transaction_version": version,
        "transfer_type": DEPOSIT_TRANSFER_TYPE if deposit else WITHDRAW_TRANSFER_TYPE,
        "transaction_timestamp": timestamp,
        "name": name or f"Token {token}",
    }


def token_activity(
    token: str,
    version: int | None,
    *,
    deposit: bool = False,
    name: str | None = None,
) -> TokenActivity:
    """Build a decoded TokenActivity."""
    return TokenActivity.from_graphql(activity_node(token, version, deposit=deposit, name=name))


def event_node(
    suffix: str,
    version: int | None,
    *,
    price: Any = None,
    creator: str = CREATOR,
    collection: str = "Aptos Monkeys",
    price_field: str = "price",
) -> dict[str, Any]:
    """Build a raw marketplace events node."""
    data: dict[str, Any] = {
        "token_id": {
            "token_data_id": {"creator": creator, "collection": collection, "name": "Monkey #1"}
        }
    }
    if price is not None:
        data[price_field] = price
    return {
        "type": f"0xmarket::events::{suffix}",
        "data": data,
        "transaction_version": version,
        "account_address": "0xmarket",
    }


def marketplace_event(suffix: str, version: int | None, *, price: Any = None) -> MarketplaceEvent:
    """Build a decoded MarketplaceEvent."""
    return MarketplaceEvent.from_graphql(event_node(suffix, version, price=price))


@pytest.fixture
def make_collection(database: DatabaseManager) -> Any:
    """Factory inserting tracked collections into the test database."""

    async def factory(**kwargs: Any) -> TrackedCollectionDTO:
        return await add_collection(database, **kwargs)

    return factory


@pytest.fixture
def activity_nodes() -> Any:
    """Builder for raw token_activities nodes."""
    return activity_node


@pytest.fixture
def make_activity() -> Any:
    """Builder for decoded token activities."""
    return token_activity


@pytest.fixture
def event_nodes() -> Any:
    """Builder for raw marketplace event nodes."""
    return event_node


@pytest.fixture
def make_event() -> Any:
    """Builder for decoded marketplace events."""
    return marketplace_event
