"""Async Aptos indexer GraphQL client with rate limiting and retry logic."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from .marketplaces import Marketplace
from .models import (
    MarketplaceEvent,
    TokenActivity,
    TokenData,
    WalletToken,
    decode_marketplace_events,
    decode_metadata_uri,
    decode_owner_count,
    decode_token_activities,
    decode_token_datas,
    decode_wallet_tokens,
)

logger = logging.getLogger(__name__)

# Constants
DEFAULT_INDEXER_URL = "https://indexer.mainnet.aptoslabs.com/v1/graphql"
MAX_REQUESTS_PER_SECOND = 5
DEFAULT_TIMEOUT_SECONDS = 30.0

DEFAULT_MAX_RETRIES = 0
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

MARKETPLACE_EVENTS_PAGE_SIZE = 100
GALLERY_SIZE = 9
WALLET_PAGE_SIZE = 50

TOKEN_ACTIVITIES_QUERY = """
query TokenActivities($creator: String!, $after: bigint!, $limit: Int!) {
  token_activities_aggregate(
    order_by: {transaction_version: asc}
    where: {creator_address: {_eq: $creator}, transaction_version: {_gt: $after}}
    limit: $limit
  ) {
    nodes {
      creator_address
      current_token_data {
        collection_data_id_hash
      }
      from_address
      to_address
      token_data_id_hash
      transaction_version
      transfer_type
      transaction_timestamp
      name
    }
  }
}
"""

EVENTS_AT_VERSION_QUERY = """
query EventsAtVersion($account: String!, $version: bigint!) {
  events(
    where: {account_address: {_eq: $account}, transaction_version: {_eq: $version}}
  ) {
    data
    type
    account_address
    transaction_version
  }
}
"""

RECENT_EVENTS_QUERY = """
query RecentEvents($account: String!, $limit: Int!) {
  events(
    where: {account_address: {_eq: $account}}
    order_by: {transaction_version: desc}
    limit: $limit
  ) {
    data
    type
    account_address
    transaction_version
  }
}
"""

EVENTS_BEFORE_VERSION_QUERY = """
query EventsBeforeVersion($account: String!, $before: bigint!, $limit: Int!) {
  events(
    where: {account_address: {_eq: $account}, transaction_version: {_lt: $before}}
    order_by: {transaction_version: desc}
    limit: $limit
  ) {
    data
    type
    account_address
    transaction_version
  }
}
"""

METADATA_URI_QUERY = """
query MetadataUri($token: String!) {
  token_datas(where: {token_data_id_hash: {_eq: $token}}) {
    metadata_uri
  }
}
"""

CURRENT_TOKEN_DATAS_QUERY = """
query CurrentTokenDatas($creator: String!, $limit: Int!) {
  current_token_datas(where: {creator_address: {_eq: $creator}}, limit: $limit) {
    current_collection_data {
      collection_data_id_hash
      collection_name
      creator_address
      description
      supply
      metadata_uri
    }
    metadata_uri
    token_data_id_hash
  }
}
"""

UNIQUE_OWNERS_QUERY = """
query UniqueOwners($creator: String!) {
  current_collection_ownership_v2_view_aggregate(
    where: {creator_address: {_eq: $creator}}
  ) {
    aggregate {
      count(distinct: true)
    }
  }
}
"""


WALLET_TOKENS_QUERY = """
query WalletTokens($owner: String!, $offset: Int!, $limit: Int!) {
  current_token_ownerships_v2(
    where: {owner_address: {_eq: $owner}}
    order_by: {last_transaction_version: desc}
    offset: $offset
    limit: $limit
  ) {
    amount
    current_token_data {
      token_data_id
      token_name
      token_uri
      current_collection {
        collection_name
        creator_address
      }
    }
  }
}
"""


class RateLimiter:
    """Minimum-interval rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


@dataclass(frozen=True)
class RetryPolicy:
    """Explicit retry configuration for transient HTTP failures.

    GraphQL ``errors`` payloads are never retried.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_RETRY_BASE_DELAY

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before the given retry (0-based), doubling each time."""
        return self.base_delay * (2**attempt)


class IndexerClientError(Exception):
    """Base exception for indexer client errors."""


class TransportError(IndexerClientError):
    """The indexer was unreachable, failed, rate limited us or reported errors."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class RetryError(TransportError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message, retryable=False)
        self.last_exception = last_exception


class AptosIndexerClient:
    """Async client for the Aptos indexer GraphQL API.

    Every query goes through a shared rate limiter. Transient HTTP failures
    are retried only as far as the configured RetryPolicy allows; the
    default policy performs a single attempt.

    Example:
        >>> client = AptosIndexerClient(indexer_url="https://...")
        >>> events = await client.get_token_activities("0xabc", 250_000_000, limit=65)
        >>> await client.close()
    """

    def __init__(
        self,
        indexer_url: str = DEFAULT_INDEXER_URL,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the indexer client.

        Args:
            indexer_url: GraphQL endpoint URL.
            http_client: Optional pre-built httpx client (owned by the caller).
            timeout: Request timeout in seconds.
            requests_per_second: Rate limit for API requests.
            retry_policy: Retry configuration for transient HTTP failures.
        """
        self._indexer_url = indexer_url
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._rate_limiter = RateLimiter(requests_per_second)
        self._retry_policy = retry_policy or RetryPolicy()

        logger.info(
            "Initialized AptosIndexerClient with url=%s, rate_limit=%.1f req/s, max_retries=%d",
            indexer_url,
            requests_per_second,
            self._retry_policy.max_retries,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "AptosIndexerClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Execute a GraphQL query and return its ``data`` object.

        Args:
            query: GraphQL document.
            variables: Query variables.

        Returns:
            The response ``data`` mapping.

        Raises:
            TransportError: On HTTP failure or a GraphQL ``errors`` payload.
            RetryError: When a non-zero retry budget is exhausted.
        """
        policy = self._retry_policy
        last_exception: TransportError | None = None

        for attempt in range(policy.max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                return await self._post(query, variables)
            except TransportError as e:
                if not e.retryable or policy.max_retries == 0:
                    raise
                last_exception = e
                if attempt == policy.max_retries:
                    break

                delay = policy.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                    attempt + 1,
                    policy.max_retries + 1,
                    str(e),
                    delay,
                )
                await asyncio.sleep(delay)

        raise RetryError(
            f"All {policy.max_retries + 1} attempts failed for indexer query",
            last_exception=last_exception,
        )

    async def _post(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Send one request to the indexer."""
        try:
            response = await self._http.post(
                self._indexer_url,
                json={"query": query, "variables": variables},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Indexer request failed: {e}", retryable=True) from e

        if response.status_code != 200:
            raise TransportError(
                f"Indexer returned HTTP {response.status_code}",
                retryable=response.status_code in RETRY_STATUS_CODES,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"Indexer returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise TransportError("Indexer returned a non-object body")
        if body.get("errors"):
            raise TransportError(f"Indexer reported errors: {body['errors']}")

        data = body.get("data")
        if not isinstance(data, dict):
            raise TransportError("Indexer response has no data")
        return data

    async def get_token_activities(
        self,
        creator_address: str,
        after_version: int,
        *,
        limit: int,
    ) -> list[TokenActivity]:
        """Fetch token activities of a creator strictly after a version.

        Args:
            creator_address: Collection creator address.
            after_version: Exclusive lower bound on transaction version.
            limit: Page size.

        Returns:
            Decoded activities in ascending version order.
        """
        data = await self.execute(
            TOKEN_ACTIVITIES_QUERY,
            {"creator": creator_address, "after": after_version, "limit": limit},
        )
        return decode_token_activities(data)

    async def get_events_at_version(
        self,
        marketplace: Marketplace,
        transaction_version: int,
    ) -> list[MarketplaceEvent]:
        """Fetch a marketplace contract's events at an exact transaction version."""
        data = await self.execute(
            EVENTS_AT_VERSION_QUERY,
            {"account": marketplace.contract_address, "version": transaction_version},
        )
        return decode_marketplace_events(data)

    async def get_recent_marketplace_events(
        self,
        marketplace: Marketplace,
        before_version: int | None = None,
        *,
        limit: int = MARKETPLACE_EVENTS_PAGE_SIZE,
    ) -> list[MarketplaceEvent]:
        """Fetch a page of a marketplace's events in descending version order.

        Args:
            marketplace: Marketplace whose contract events are scanned.
            before_version: Exclusive upper bound; None starts from the newest.
            limit: Page size.
        """
        if before_version is None:
            data = await self.execute(
                RECENT_EVENTS_QUERY,
                {"account": marketplace.contract_address, "limit": limit},
            )
        else:
            data = await self.execute(
                EVENTS_BEFORE_VERSION_QUERY,
                {
                    "account": marketplace.contract_address,
                    "before": before_version,
                    "limit": limit,
                },
            )
        return decode_marketplace_events(data)

    async def get_metadata_uri(self, token_data_id_hash: str) -> str | None:
        """Fetch a token's metadata URI."""
        data = await self.execute(METADATA_URI_QUERY, {"token": token_data_id_hash})
        return decode_metadata_uri(data)

    async def get_current_token_datas(
        self,
        creator_address: str,
        *,
        limit: int = GALLERY_SIZE,
    ) -> list[TokenData]:
        """Fetch a creator's current tokens together with collection data."""
        data = await self.execute(
            CURRENT_TOKEN_DATAS_QUERY,
            {"creator": creator_address, "limit": limit},
        )
        return decode_token_datas(data)

    async def get_unique_owner_count(self, creator_address: str) -> int:
        """Fetch the distinct owner count of a creator's collection."""
        data = await self.execute(UNIQUE_OWNERS_QUERY, {"creator": creator_address})
        return decode_owner_count(data)

    async def get_wallet_tokens(
        self,
        owner_address: str,
        *,
        offset: int = 0,
        limit: int = WALLET_PAGE_SIZE,
    ) -> list[WalletToken]:
        """Fetch one page of the tokens currently held by a wallet."""
        data = await self.execute(
            WALLET_TOKENS_QUERY,
            {"owner": owner_address, "offset": offset, "limit": limit},
        )
        return decode_wallet_tokens(data)

    async def health_check(self) -> bool:
        """Check if the indexer answers a trivial query.

        Returns:
            True if a well-formed response came back, False otherwise.
        """
        try:
            await self.execute("query Ping { __typename }", {})
            return True
        except IndexerClientError as e:
            logger.error("Health check failed: %s", e)
            return False
