"""Canonical price resolution across competing marketplaces.

Marketplaces are queried in a fixed priority order for their events at
the exact transaction version. The first priced non-cancellation event
wins immediately; a priced cancellation is only a fallback, returned when
no marketplace carries a genuine priced event at that version.
"""

from __future__ import annotations

import logging
import warnings
from collections import OrderedDict
from collections.abc import Sequence

from aptos_nft_sync.ingestor.graphql_client import AptosIndexerClient
from aptos_nft_sync.ingestor.marketplaces import (
    SUPPORTED_MARKETPLACES,
    EventKind,
    Marketplace,
    short_event_type,
)
from aptos_nft_sync.ingestor.models import MarketplaceEvent, parse_octas
from aptos_nft_sync.reconciler.models import DataIntegrityWarning, PriceResolution

logger = logging.getLogger(__name__)

DEFAULT_MEMO_SIZE = 1024


class PriceResolver:
    """Resolves the price, marketplace and event type at a transaction version.

    Resolution depends only on the version, so results are memoized for
    the lifetime of the resolver (one sync run). Transport errors are not
    caught here; they propagate so the caller can skip the collection.

    Example:
        >>> resolver = PriceResolver(indexer)
        >>> resolution = await resolver.resolve(312_000_123, "Aptos Monkey #42")
        >>> resolution.price, resolution.marketplace
        (Decimal('12.5'), 'topaz')
    """

    def __init__(
        self,
        client: AptosIndexerClient,
        marketplaces: Sequence[Marketplace] = SUPPORTED_MARKETPLACES,
        *,
        memo_size: int = DEFAULT_MEMO_SIZE,
    ) -> None:
        """Initialize the resolver.

        Args:
            client: Indexer client used for events-at-version queries.
            marketplaces: Marketplaces in priority order.
            memo_size: Maximum number of memoized versions.
        """
        self._client = client
        self._marketplaces = tuple(marketplaces)
        self._memo: OrderedDict[int, PriceResolution] = OrderedDict()
        self._memo_size = memo_size
        self.queries_made = 0

    def _priced(self, marketplace: Marketplace, event: MarketplaceEvent) -> PriceResolution | None:
        """Build a resolution from one event, or None if it carries no usable price."""
        raw = event.raw_price(*marketplace.price_fields)
        if raw is None:
            return None
        try:
            price = parse_octas(raw)
        except ValueError:
            warnings.warn(
                f"Discarding {marketplace.name} event at version {event.transaction_version} "
                f"with non-numeric price {raw!r}",
                DataIntegrityWarning,
                stacklevel=2,
            )
            return None
        return PriceResolution(
            price=price,
            marketplace=marketplace.name,
            event_type=short_event_type(event.type_tag),
            kind=event.kind,
        )

    async def resolve(self, transaction_version: int, token_name: str = "") -> PriceResolution:
        """Resolve the canonical price at a transaction version.

        Args:
            transaction_version: Exact version of the transfer event.
            token_name: Token name, used for logging only.

        Returns:
            PriceResolution; ``price is None`` when no marketplace priced
            the version.

        Raises:
            TransportError: If a marketplace query fails.
        """
        memoized = self._memo.get(transaction_version)
        if memoized is not None:
            self._memo.move_to_end(transaction_version)
            return memoized

        fallback: PriceResolution | None = None
        resolution: PriceResolution | None = None

        for marketplace in self._marketplaces:
            events = await self._client.get_events_at_version(marketplace, transaction_version)
            self.queries_made += 1
            for event in events:
                candidate = self._priced(marketplace, event)
                if candidate is None:
                    continue
                if event.kind == EventKind.CANCEL:
                    if fallback is None:
                        fallback = candidate
                    continue
                resolution = candidate
                break
            if resolution is not None:
                break

        if resolution is None:
            resolution = fallback or PriceResolution.unresolved()
            if fallback is not None:
                logger.debug(
                    "%s @ %d: only a cancellation found on %s",
                    token_name,
                    transaction_version,
                    fallback.marketplace,
                )
            else:
                logger.debug("%s @ %d: no marketplace price", token_name, transaction_version)

        self._remember(transaction_version, resolution)
        return resolution

    def _remember(self, transaction_version: int, resolution: PriceResolution) -> None:
        self._memo[transaction_version] = resolution
        if len(self._memo) > self._memo_size:
            self._memo.popitem(last=False)
