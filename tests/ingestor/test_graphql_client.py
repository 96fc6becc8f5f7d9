"""Tests for the Aptos indexer GraphQL client."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from aptos_nft_sync.ingestor.graphql_client import (
    EVENTS_AT_VERSION_QUERY,
    EVENTS_BEFORE_VERSION_QUERY,
    RECENT_EVENTS_QUERY,
    TOKEN_ACTIVITIES_QUERY,
    WALLET_TOKENS_QUERY,
    AptosIndexerClient,
    RateLimiter,
    RetryError,
    RetryPolicy,
    TransportError,
)
from aptos_nft_sync.ingestor.marketplaces import SUPPORTED_MARKETPLACES, EventKind
from aptos_nft_sync.ingestor.models import EventDecodeError

INDEXER_URL = "https://indexer.test/v1/graphql"


def make_client(
    handler: Any,
    *,
    retry_policy: RetryPolicy | None = None,
) -> AptosIndexerClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AptosIndexerClient(
        INDEXER_URL,
        http_client=http_client,
        requests_per_second=1000,
        retry_policy=retry_policy,
    )


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_is_single_attempt(self) -> None:
        """The default policy performs no retries."""
        assert RetryPolicy().max_retries == 0

    def test_delay_doubles(self) -> None:
        """Backoff delay doubles with every attempt."""
        policy = RetryPolicy(max_retries=3, base_delay=0.5)
        assert [policy.delay_for(i) for i in range(3)] == [0.5, 1.0, 2.0]


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.mark.asyncio
    async def test_first_acquire_does_not_sleep(self) -> None:
        """The first request goes out immediately."""
        limiter = RateLimiter(max_requests_per_second=2)
        with patch("aptos_nft_sync.ingestor.graphql_client.asyncio.sleep") as mock_sleep:
            await limiter.acquire()
        mock_sleep.assert_not_called()


class TestExecute:
    """Tests for AptosIndexerClient.execute."""

    @pytest.mark.asyncio
    async def test_posts_query_and_variables(self) -> None:
        """The request body carries the query document and its variables."""
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"data": {"ok": True}})

        client = make_client(handler)
        data = await client.execute("query Q { ok }", {"a": 1})

        assert data == {"ok": True}
        assert seen == {"query": "query Q { ok }", "variables": {"a": 1}}

    @pytest.mark.asyncio
    async def test_graphql_errors_raise_transport_error(self) -> None:
        """A GraphQL errors payload aborts with TransportError."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"errors": [{"message": "boom"}]})

        client = make_client(handler)
        with pytest.raises(TransportError, match="boom"):
            await client.execute("query Q { ok }", {})

    @pytest.mark.asyncio
    async def test_graphql_errors_are_not_retried(self) -> None:
        """Errors payloads are never retried, even with a retry budget."""
        calls = 0

        def handler(_request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"errors": [{"message": "bad query"}]})

        client = make_client(handler, retry_policy=RetryPolicy(max_retries=3, base_delay=0))
        with pytest.raises(TransportError) as exc_info:
            await client.execute("query Q { ok }", {})

        assert not isinstance(exc_info.value, RetryError)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_http_failure_without_retries(self) -> None:
        """With the default policy an HTTP 503 is raised after one attempt."""
        calls = 0

        def handler(_request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        client = make_client(handler)
        with pytest.raises(TransportError) as exc_info:
            await client.execute("query Q { ok }", {})

        assert exc_info.value.retryable is True
        assert calls == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_raise_retry_error(self) -> None:
        """A configured retry budget ends in RetryError carrying the last failure."""
        calls = 0

        def handler(_request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502)

        client = make_client(handler, retry_policy=RetryPolicy(max_retries=2, base_delay=0))
        with patch(
            "aptos_nft_sync.ingestor.graphql_client.asyncio.sleep", new_callable=AsyncMock
        ):
            with pytest.raises(RetryError) as exc_info:
                await client.execute("query Q { ok }", {})

        assert calls == 3
        assert isinstance(exc_info.value.last_exception, TransportError)

    @pytest.mark.asyncio
    async def test_retry_then_success(self) -> None:
        """A transient failure followed by success returns the data."""
        responses = [httpx.Response(429), httpx.Response(200, json={"data": {"ok": 1}})]

        def handler(_request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        client = make_client(handler, retry_policy=RetryPolicy(max_retries=1, base_delay=0))
        with patch(
            "aptos_nft_sync.ingestor.graphql_client.asyncio.sleep", new_callable=AsyncMock
        ):
            data = await client.execute("query Q { ok }", {})

        assert data == {"ok": 1}

    @pytest.mark.asyncio
    async def test_client_error_status_not_retryable(self) -> None:
        """A 400 response is not marked retryable."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(400)

        client = make_client(handler, retry_policy=RetryPolicy(max_retries=2, base_delay=0))
        with pytest.raises(TransportError) as exc_info:
            await client.execute("query Q { ok }", {})
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_missing_data_raises(self) -> None:
        """A body without data is a transport failure."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"something": "else"})

        client = make_client(handler)
        with pytest.raises(TransportError, match="no data"):
            await client.execute("query Q { ok }", {})

    @pytest.mark.asyncio
    async def test_network_error_raises_transport_error(self) -> None:
        """Connection errors surface as TransportError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        client = make_client(handler)
        with pytest.raises(TransportError, match="unreachable"):
            await client.execute("query Q { ok }", {})


class TestQueries:
    """Tests for the typed query helpers."""

    @pytest.mark.asyncio
    async def test_get_token_activities(self, activity_nodes: Any) -> None:
        """Token activities are requested after a version and decoded."""
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            nodes = [activity_nodes("0xa", 11), activity_nodes("0xb", 12, deposit=True)]
            return httpx.Response(
                200, json={"data": {"token_activities_aggregate": {"nodes": nodes}}}
            )

        client = make_client(handler)
        activities = await client.get_token_activities("0xcreator", 10, limit=65)

        assert seen["query"] == TOKEN_ACTIVITIES_QUERY
        assert seen["variables"] == {"creator": "0xcreator", "after": 10, "limit": 65}
        assert [a.kind for a in activities] == [EventKind.WITHDRAW, EventKind.DEPOSIT]

    @pytest.mark.asyncio
    async def test_get_token_activities_malformed_envelope(self) -> None:
        """A response without the expected envelope fails fast."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"unexpected": []}})

        client = make_client(handler)
        with pytest.raises(EventDecodeError):
            await client.get_token_activities("0xcreator", 10, limit=65)

    @pytest.mark.asyncio
    async def test_get_events_at_version(self, event_nodes: Any) -> None:
        """Marketplace events are filtered by contract and exact version."""
        seen: dict[str, Any] = {}
        topaz = SUPPORTED_MARKETPLACES[0]

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(
                200, json={"data": {"events": [event_nodes("BuyEvent", 42, price="150000000")]}}
            )

        client = make_client(handler)
        events = await client.get_events_at_version(topaz, 42)

        assert seen["query"] == EVENTS_AT_VERSION_QUERY
        assert seen["variables"] == {"account": topaz.contract_address, "version": 42}
        assert events[0].kind == EventKind.FILL

    @pytest.mark.asyncio
    async def test_recent_events_first_and_next_page(self) -> None:
        """The first page has no bound; later pages use the exclusive upper bound."""
        queries: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            queries.append(json.loads(request.content)["query"])
            return httpx.Response(200, json={"data": {"events": []}})

        client = make_client(handler)
        await client.get_recent_marketplace_events(SUPPORTED_MARKETPLACES[1])
        await client.get_recent_marketplace_events(SUPPORTED_MARKETPLACES[1], 500)

        assert queries == [RECENT_EVENTS_QUERY, EVENTS_BEFORE_VERSION_QUERY]

    @pytest.mark.asyncio
    async def test_get_unique_owner_count(self) -> None:
        """The distinct owner count is decoded as an integer."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {
                        "current_collection_ownership_v2_view_aggregate": {
                            "aggregate": {"count": 321}
                        }
                    }
                },
            )

        client = make_client(handler)
        assert await client.get_unique_owner_count("0xcreator") == 321

    @pytest.mark.asyncio
    async def test_get_metadata_uri_missing(self) -> None:
        """No token data means no metadata URI."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"token_datas": []}})

        client = make_client(handler)
        assert await client.get_metadata_uri("0xtoken") is None

    @pytest.mark.asyncio
    async def test_get_wallet_tokens(self) -> None:
        """Ownerships are paged by offset and decoded; malformed nodes are dropped."""
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            nodes = [
                {
                    "amount": 1,
                    "current_token_data": {
                        "token_data_id": "0xt1",
                        "token_name": "Monkey #1",
                        "token_uri": "ipfs://meta/1.json",
                        "current_collection": {
                            "collection_name": "Aptos Monkeys",
                            "creator_address": "0xcreator",
                        },
                    },
                },
                {"amount": 1, "current_token_data": None},
            ]
            return httpx.Response(200, json={"data": {"current_token_ownerships_v2": nodes}})

        client = make_client(handler)
        tokens = await client.get_wallet_tokens("0xwallet", offset=50, limit=50)

        assert seen["query"] == WALLET_TOKENS_QUERY
        assert seen["variables"] == {"owner": "0xwallet", "offset": 50, "limit": 50}
        assert [t.token_data_id for t in tokens] == ["0xt1"]
        assert tokens[0].creator_address == "0xcreator"

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        """Health check reports False instead of raising."""

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        client = make_client(handler)
        assert await client.health_check() is False


class TestContextManager:
    """Tests for client lifecycle."""

    @pytest.mark.asyncio
    async def test_owned_client_closed(self) -> None:
        """A client created by the indexer client is closed on exit."""
        async with AptosIndexerClient(INDEXER_URL) as client:
            http = client._http
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_shared_client_left_open(self) -> None:
        """A caller-provided client is not closed."""
        http = httpx.AsyncClient()
        async with AptosIndexerClient(INDEXER_URL, http_client=http):
            pass
        assert not http.is_closed
        await http.aclose()
