"""Event classification and per-token deduplication.

Listings are single-slot state, so each token keeps only its newest
withdraw/deposit event and a withdraw survivor becomes a listing
candidate. Sales are an append-only log, so every deposit event in the
batch is a sale candidate, duplicates included.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from aptos_nft_sync.ingestor.marketplaces import EventKind
from aptos_nft_sync.ingestor.models import TokenActivity

logger = logging.getLogger(__name__)

TRANSFER_KINDS = frozenset({EventKind.WITHDRAW, EventKind.DEPOSIT})


@dataclass(frozen=True)
class Classification:
    """Result of classifying one fetched batch.

    Attributes:
        listing_candidates: Newest event per token where that event is a
            withdraw, in first-seen token order.
        sale_candidates: Every deposit event of the batch, in feed order.
    """

    listing_candidates: tuple[TokenActivity, ...]
    sale_candidates: tuple[TokenActivity, ...]


def latest_per_token(events: Iterable[TokenActivity]) -> dict[str, TokenActivity]:
    """Keep the highest-version transfer event for each token.

    Ties keep the first event seen. Events without a parsable version never
    displace a versioned one.

    Args:
        events: Raw events in feed order.

    Returns:
        Mapping of token_data_id_hash to its newest transfer event.
    """
    latest: dict[str, TokenActivity] = {}
    for event in events:
        if event.kind not in TRANSFER_KINDS:
            continue
        current = latest.get(event.token_data_id_hash)
        if current is None:
            latest[event.token_data_id_hash] = event
            continue
        if event.transaction_version is None:
            continue
        if (
            current.transaction_version is None
            or event.transaction_version > current.transaction_version
        ):
            latest[event.token_data_id_hash] = event
    return latest


def classify(events: Iterable[TokenActivity]) -> Classification:
    """Split a raw batch into listing and sale candidates.

    Args:
        events: Raw token activities.

    Returns:
        Classification with deduplicated listing candidates and the
        complete list of deposit events.
    """
    batch = list(events)
    latest = latest_per_token(batch)

    listing_candidates = tuple(e for e in latest.values() if e.kind == EventKind.WITHDRAW)
    sale_candidates = tuple(e for e in batch if e.kind == EventKind.DEPOSIT)

    ignored = sum(1 for e in batch if e.kind not in TRANSFER_KINDS)
    if ignored:
        logger.debug("Ignored %d non-transfer events", ignored)

    return Classification(
        listing_candidates=listing_candidates,
        sale_candidates=sale_candidates,
    )
