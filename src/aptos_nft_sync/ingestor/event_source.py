"""Event source adapter over the indexer's token activity feed.

Pages are requested with a strictly increasing version watermark until a
page comes back with fewer events than the threshold, which is taken as
"source exhausted for now".
"""

import logging

from .graphql_client import AptosIndexerClient
from .models import FetchResult, TokenActivity

logger = logging.getLogger(__name__)


class EventSource:
    """Typed, paginated access to a creator's token activity events.

    The adapter never retries on its own; a transport failure aborts the
    whole fetch and surfaces as TransportError to the caller.
    """

    def __init__(self, client: AptosIndexerClient) -> None:
        self._client = client

    async def fetch_events(
        self,
        creator_address: str,
        after_version: int,
        *,
        page_size: int,
        max_pages: int,
        full_page_threshold: int | None = None,
    ) -> FetchResult:
        """Fetch up to ``max_pages`` pages of events after a version.

        Args:
            creator_address: Collection creator address.
            after_version: Exclusive lower bound (the stored watermark).
            page_size: Events requested per page.
            max_pages: Upper bound on pages fetched in this call.
            full_page_threshold: A page with fewer events stops the loop;
                defaults to ``page_size``.

        Returns:
            FetchResult with all events in fetch order, the highest version
            observed (None when no page carried a parsable version) and
            the number of events fetched.

        Raises:
            TransportError: If any page request fails.
            EventDecodeError: If a response envelope is malformed.
        """
        threshold = page_size if full_page_threshold is None else full_page_threshold
        cursor = after_version
        last_version: int | None = None
        events: list[TokenActivity] = []
        pages_fetched = 0

        for _ in range(max_pages):
            page = await self._client.get_token_activities(
                creator_address,
                cursor,
                limit=page_size,
            )
            pages_fetched += 1
            events.extend(page)

            page_versions = [
                e.transaction_version for e in page if e.transaction_version is not None
            ]
            if page_versions:
                page_max = max(page_versions)
                if last_version is None or page_max > last_version:
                    last_version = page_max
                cursor = max(cursor, page_max)

            if len(page) < threshold:
                logger.debug(
                    "Creator %s: page %d returned %d < %d events, source exhausted",
                    creator_address,
                    pages_fetched,
                    len(page),
                    threshold,
                )
                break
            if not page_versions:
                # Without a parsable version the next page would repeat this one
                logger.warning(
                    "Creator %s: full page without parsable versions, stopping fetch",
                    creator_address,
                )
                break

        logger.debug(
            "Creator %s: fetched %d events in %d page(s), last_version=%s",
            creator_address,
            len(events),
            pages_fetched,
            last_version,
        )
        return FetchResult(
            events=tuple(events),
            last_version=last_version,
            total_fetched=len(events),
            pages_fetched=pages_fetched,
        )
