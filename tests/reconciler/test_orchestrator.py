"""Tests for the catalog sync orchestrator against a SQLite catalog."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from aptos_nft_sync.config import SyncSettings
from aptos_nft_sync.ingestor.graphql_client import TransportError
from aptos_nft_sync.ingestor.marketplaces import EventKind
from aptos_nft_sync.ingestor.metadata import NftMetadataFetcher
from aptos_nft_sync.ingestor.models import FetchResult, TokenActivity
from aptos_nft_sync.reconciler.models import (
    CollectionSyncState,
    ListingUpsert,
    PriceResolution,
    SyncCursor,
)
from aptos_nft_sync.reconciler.orchestrator import CatalogSyncOrchestrator, SyncMode
from aptos_nft_sync.storage.database import DatabaseManager
from aptos_nft_sync.storage.repos import (
    ActivityRepository,
    CollectionRepository,
    ListingRepository,
    TrackedCollectionDTO,
)

FILL = EventKind.FILL
LIST = EventKind.LIST


class StubResolver:
    """Resolver returning fixed resolutions per version."""

    def __init__(self, resolutions: dict[int, PriceResolution] | None = None) -> None:
        self.resolutions = resolutions or {}
        self.default: PriceResolution | None = None
        self.calls: list[int] = []

    async def resolve(self, transaction_version: int, token_name: str = "") -> PriceResolution:
        self.calls.append(transaction_version)
        if transaction_version in self.resolutions:
            return self.resolutions[transaction_version]
        return self.default or PriceResolution.unresolved()


def priced(price: str, kind: EventKind = FILL, marketplace: str = "topaz") -> PriceResolution:
    event_type = {FILL: "BuyEvent", LIST: "ListEvent"}.get(kind, "DelistEvent")
    return PriceResolution(
        price=Decimal(price), marketplace=marketplace, event_type=event_type, kind=kind
    )


def fetched(events: list[TokenActivity]) -> FetchResult:
    versions = [e.transaction_version for e in events if e.transaction_version is not None]
    return FetchResult(
        events=tuple(events),
        last_version=max(versions) if versions else None,
        total_fetched=len(events),
        pages_fetched=1,
    )


def make_event_source(*results: FetchResult) -> MagicMock:
    source = MagicMock()
    source.fetch_events = AsyncMock(side_effect=list(results))
    return source


def make_orchestrator(
    database: DatabaseManager,
    source: MagicMock,
    resolver: StubResolver,
    *,
    metadata: Any = None,
    **settings: Any,
) -> CatalogSyncOrchestrator:
    return CatalogSyncOrchestrator(
        database=database,
        event_source=source,
        price_resolver=resolver,  # type: ignore[arg-type]
        metadata=metadata,
        settings=SyncSettings(**settings),
    )


async def seed_listing(
    database: DatabaseManager, collection_id: str, token: str, version: int
) -> None:
    async with database.session() as session:
        await ListingRepository(session).upsert(
            ListingUpsert(
                token_data_id_hash=token,
                collection_id=collection_id,
                name=f"Token {token}",
                price=Decimal("1"),
                marketplace="topaz",
                event_type="ListEvent",
                transaction_version=version,
            )
        )


async def load_collection(database: DatabaseManager, collection_id: str) -> Any:
    async with database.session() as session:
        return await CollectionRepository(session).get_by_id(collection_id)


class TestCatchUp:
    """Tests for the NEW -> CATCHING_UP -> STEADY transitions."""

    @pytest.mark.asyncio
    async def test_short_history_marks_caught_up(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """100 + 40 events is under two full pages, so the history is exhausted."""
        collection = await make_collection(caught_up=False, last_version=None)
        events = [make_activity(f"0x{i}", 300 + i) for i in range(140)]
        source = make_event_source(fetched(events))

        result = await make_orchestrator(database, source, StubResolver()).run_catch_up()

        assert result.success
        assert result.collections_processed == 1
        stored = await load_collection(database, collection.id)
        assert stored.caught_up_txn is True
        assert stored.last_transaction_version == 439
        assert stored.last_updated_listings_at is not None

    @pytest.mark.asyncio
    async def test_new_collection_starts_from_default_version(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        await make_collection(caught_up=False, last_version=None)
        source = make_event_source(fetched([]))

        await make_orchestrator(
            database, source, StubResolver(), SYNC_DEFAULT_START_VERSION=123
        ).run_catch_up()

        source.fetch_events.assert_awaited_once_with(
            "0xcreator", 123, page_size=100, max_pages=2
        )

    @pytest.mark.asyncio
    async def test_full_history_keeps_catching_up(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """Two full pages leave the collection catching up at the new watermark."""
        collection = await make_collection(caught_up=False, last_version=None)
        events = [make_activity(f"0x{i}", 300 + i) for i in range(200)]
        source = make_event_source(fetched(events))

        await make_orchestrator(database, source, StubResolver()).run_catch_up()

        stored = await load_collection(database, collection.id)
        assert stored.caught_up_txn is False
        assert stored.last_transaction_version == 499
        state = CollectionSyncState.from_flags(
            stored.caught_up_txn, stored.last_transaction_version
        )
        assert state == CollectionSyncState.CATCHING_UP

    @pytest.mark.asyncio
    async def test_oldest_collection_first(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        now = datetime.now(UTC)
        await make_collection(
            creator="0xyoung", name="Young", caught_up=False, created_at=now
        )
        await make_collection(
            creator="0xold", name="Old", caught_up=False, created_at=now - timedelta(days=3)
        )
        source = make_event_source(fetched([]))

        await make_orchestrator(database, source, StubResolver()).run_catch_up()

        assert source.fetch_events.await_args.args[0] == "0xold"

    @pytest.mark.asyncio
    async def test_nothing_to_catch_up(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        await make_collection(caught_up=True)
        source = make_event_source()

        result = await make_orchestrator(database, source, StubResolver()).run_catch_up()

        assert result.success
        assert result.collections_processed == 0
        source.fetch_events.assert_not_called()


class TestSteadySync:
    """Tests for the steady-state listings sync."""

    @pytest.mark.asyncio
    async def test_sales_delete_listings_and_append_activities(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """65 deposits over three listed tokens give 65 sales and clear the listings."""
        collection = await make_collection(collection_id="c1")
        tokens = ["0xa", "0xb", "0xc"]
        for token in tokens:
            await seed_listing(database, collection.id, token, 500)
        events = [make_activity(tokens[i % 3], 1001 + i, deposit=True) for i in range(65)]
        resolver = StubResolver()
        resolver.default = priced("2.5")

        result = await make_orchestrator(
            database, make_event_source(fetched(events)), resolver
        ).run_listings_sync(SyncCursor())

        outcome = result.outcomes["c1"]
        assert outcome.activities_inserted == 65
        assert outcome.listings_deleted == 3
        async with database.session() as session:
            assert await ListingRepository(session).list_by_collection("c1") == []
            activities = await ActivityRepository(session).list_recent_for_collection("c1", 100)
        assert len(activities) == 65
        assert {a.marketplace for a in activities} == {"topaz"}
        assert (await load_collection(database, "c1")).last_transaction_version == 1065

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """Replaying the same events adds no duplicate activities."""
        await make_collection(collection_id="c1", last_version=100)
        events = [
            make_activity("0xa", 101, deposit=True),
            make_activity("0xb", 102),
        ]
        resolver = StubResolver({101: priced("3"), 102: priced("4", LIST)})
        source = make_event_source(fetched(events), fetched(events))
        orchestrator = make_orchestrator(database, source, resolver)

        first = await orchestrator.run_listings_sync(SyncCursor())
        second = await orchestrator.run_listings_sync(SyncCursor())

        assert first.outcomes["c1"].activities_inserted == 1
        assert second.outcomes["c1"].activities_inserted == 0
        async with database.session() as session:
            listings = await ListingRepository(session).list_by_collection("c1")
            activities = await ActivityRepository(session).list_for_token("0xa")
        assert [listing.token_data_id_hash for listing in listings] == ["0xb"]
        assert listings[0].price == Decimal("4")
        assert len(activities) == 1

    @pytest.mark.asyncio
    async def test_listing_resolved_as_fill_is_not_listed(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        await make_collection(collection_id="c1", last_version=100)
        events = [make_activity("0xa", 101), make_activity("0xb", 102)]
        resolver = StubResolver({101: priced("3", FILL), 102: priced("4", EventKind.CANCEL)})

        await make_orchestrator(
            database, make_event_source(fetched(events)), resolver
        ).run_listings_sync(SyncCursor())

        async with database.session() as session:
            assert await ListingRepository(session).list_by_collection("c1") == []

    @pytest.mark.asyncio
    async def test_watermark_never_moves_backwards(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        await make_collection(collection_id="c1", last_version=1000)
        events = [make_activity("0xa", 900)]

        result = await make_orchestrator(
            database, make_event_source(fetched(events)), StubResolver()
        ).run_listings_sync(SyncCursor())

        assert result.outcomes["c1"].watermark_advanced is False
        assert (await load_collection(database, "c1")).last_transaction_version == 1000

    @pytest.mark.asyncio
    async def test_empty_fetch_keeps_watermark(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        await make_collection(collection_id="c1", last_version=1000)

        await make_orchestrator(
            database, make_event_source(fetched([])), StubResolver()
        ).run_listings_sync(SyncCursor())

        assert (await load_collection(database, "c1")).last_transaction_version == 1000

    @pytest.mark.asyncio
    async def test_new_listing_gets_image(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """Only tokens without an existing listing trigger an image lookup."""
        await make_collection(collection_id="c1", last_version=100)
        await seed_listing(database, "c1", "0xold", 50)
        events = [make_activity("0xnew", 101), make_activity("0xold", 102)]
        resolver = StubResolver({101: priced("3", LIST), 102: priced("5", LIST)})
        metadata = MagicMock()
        metadata.get_token_image = AsyncMock(return_value="https://img.test/1.png")

        await make_orchestrator(
            database, make_event_source(fetched(events)), resolver, metadata=metadata
        ).run_listings_sync(SyncCursor())

        metadata.get_token_image.assert_awaited_once_with("0xnew")
        async with database.session() as session:
            listing = await ListingRepository(session).get("0xnew")
        assert listing is not None
        assert listing.image_url == "https://img.test/1.png"

    @pytest.mark.asyncio
    async def test_unparseable_metadata_uri_still_writes_listing(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """A metadata URI httpx rejects leaves the listing without an image."""
        await make_collection(collection_id="c1", last_version=100)
        indexer = MagicMock()
        indexer.get_metadata_uri = AsyncMock(return_value="https://ipfs.io/ipfs/Qm1.json\n")
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda _: httpx.Response(404)))
        metadata = NftMetadataFetcher(indexer, http)
        resolver = StubResolver({101: priced("3", LIST)})

        result = await make_orchestrator(
            database,
            make_event_source(fetched([make_activity("0xnew", 101)])),
            resolver,
            metadata=metadata,
        ).run_listings_sync(SyncCursor())

        assert result.collections_processed == 1
        assert result.collections_failed == 0
        async with database.session() as session:
            listing = await ListingRepository(session).get("0xnew")
        assert listing is not None
        assert listing.image_url is None
        assert (await load_collection(database, "c1")).last_transaction_version == 101

    @pytest.mark.asyncio
    async def test_unsaved_collection_is_rejected(self, database: DatabaseManager) -> None:
        """A collection without an id raises before anything is fetched."""
        source = make_event_source()
        collection = TrackedCollectionDTO(
            verified_creator_address="0xc", name="Unsaved", slug="unsaved_aptos"
        )

        with pytest.raises(ValueError, match="has no id"):
            await make_orchestrator(database, source, StubResolver()).build_batch(
                collection, SyncMode.STEADY
            )

        source.fetch_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_catching_up_collections_are_skipped(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        await make_collection(collection_id="c1", caught_up=False)
        source = make_event_source()

        result = await make_orchestrator(database, source, StubResolver()).run_listings_sync(
            SyncCursor()
        )

        assert result.collections_skipped == 1
        source.fetch_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_error_skips_collection(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        """A fetch failure skips that collection; the run continues."""
        await make_collection(collection_id="c2", creator="0xtwo", name="Two")
        await make_collection(collection_id="c1", creator="0xone", name="One")
        source = MagicMock()
        source.fetch_events = AsyncMock(side_effect=[TransportError("down"), fetched([])])

        result = await make_orchestrator(database, source, StubResolver()).run_listings_sync(
            SyncCursor()
        )

        assert result.success
        assert result.collections_failed == 1
        assert result.collections_processed == 1
        assert (await load_collection(database, "c2")).last_updated_listings_at is None

    @pytest.mark.asyncio
    async def test_commit_failure_aborts_run(
        self, database: DatabaseManager, make_collection: Any, make_activity: Any
    ) -> None:
        """A failed commit stops the run, keeps the cursor and writes nothing."""
        await make_collection(collection_id="c2", creator="0xtwo", name="Two", last_version=10)
        await make_collection(collection_id="c1", creator="0xone", name="One", last_version=10)
        source = make_event_source(fetched([make_activity("0xa", 11)]), fetched([]))
        cursor = SyncCursor(start_after=None, limit=10)

        with patch(
            "aptos_nft_sync.reconciler.orchestrator.CatalogWriter.apply",
            new=AsyncMock(side_effect=SQLAlchemyError("disk full")),
        ):
            result = await make_orchestrator(
                database, source, StubResolver()
            ).run_listings_sync(cursor)

        assert result.success is False
        assert "disk full" in (result.error or "")
        assert result.collections_failed == 1
        assert result.cursor == cursor
        assert source.fetch_events.await_count == 1
        assert (await load_collection(database, "c2")).last_transaction_version == 10


class TestCursorPaging:
    """Tests for the explicit listings sync cursor."""

    @pytest.mark.asyncio
    async def test_pages_in_descending_id_order_and_wraps(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        for index in (1, 2, 3):
            await make_collection(
                collection_id=f"c{index}", creator=f"0x{index}", name=f"Collection {index}"
            )
        source = MagicMock()
        source.fetch_events = AsyncMock(return_value=fetched([]))
        orchestrator = make_orchestrator(
            database, source, StubResolver(), SYNC_PAGES_PER_RUN=1
        )

        first = await orchestrator.run_listings_sync(SyncCursor(limit=2))
        assert first.cursor == SyncCursor(start_after="c2", limit=2)

        second = await orchestrator.run_listings_sync(first.cursor)
        assert second.collections_processed == 1
        assert second.cursor == SyncCursor(start_after=None, limit=2)

        creators = [call.args[0] for call in source.fetch_events.await_args_list]
        assert creators == ["0x3", "0x2", "0x1"]

    @pytest.mark.asyncio
    async def test_multiple_pages_per_run(
        self, database: DatabaseManager, make_collection: Any
    ) -> None:
        for index in (1, 2, 3):
            await make_collection(
                collection_id=f"c{index}", creator=f"0x{index}", name=f"Collection {index}"
            )
        source = MagicMock()
        source.fetch_events = AsyncMock(return_value=fetched([]))

        result = await make_orchestrator(
            database, source, StubResolver(), SYNC_PAGES_PER_RUN=2
        ).run_listings_sync(SyncCursor(limit=2))

        assert result.collections_processed == 3
        assert result.cursor == SyncCursor(start_after=None, limit=2)

    @pytest.mark.asyncio
    async def test_empty_catalog_wraps(self, database: DatabaseManager) -> None:
        result = await make_orchestrator(
            database, make_event_source(), StubResolver()
        ).run_listings_sync(SyncCursor(start_after="zzz", limit=2))

        assert result.success
        assert result.cursor == SyncCursor(start_after=None, limit=2)
