"""Data models for the ingestor module.

Every external payload is decoded here, once, into frozen dataclasses.
Downstream code never reaches into raw GraphQL dictionaries.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .marketplaces import PRICE_DECIMALS, EventKind, event_kind_for

logger = logging.getLogger(__name__)

OCTAS_PER_APT = Decimal(10) ** PRICE_DECIMALS


class EventDecodeError(Exception):
    """Raised when an indexer payload does not have the expected shape."""


def parse_octas(value: Any) -> Decimal:
    """Convert a raw on-chain price to a normalized decimal amount.

    Args:
        value: Integer octas as int or numeric string.

    Returns:
        The price divided by 10^8.

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Non-numeric price: {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Non-numeric price: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Non-numeric price: {value!r}")
    return amount / OCTAS_PER_APT


def parse_version(value: Any) -> int | None:
    """Parse a transaction version, returning None when absent or malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an indexer timestamp; naive values are UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require_mapping(payload: Any, *path: str) -> Any:
    """Walk nested keys of a payload, failing fast on a missing level."""
    current = payload
    walked: list[str] = []
    for key in path:
        walked.append(key)
        if not isinstance(current, Mapping) or key not in current:
            raise EventDecodeError(f"Missing '{'.'.join(walked)}' in indexer response")
        current = current[key]
    return current


def _require_list(payload: Any, *path: str) -> list[Any]:
    value = _require_mapping(payload, *path)
    if not isinstance(value, list):
        raise EventDecodeError(f"Expected a list at '{'.'.join(path)}'")
    return value


@dataclass(frozen=True)
class TokenActivity:
    """A token transfer event from the indexer's token activity feed."""

    token_data_id_hash: str
    transfer_type: str
    kind: EventKind
    transaction_version: int | None
    name: str = ""
    creator_address: str = ""
    from_address: str | None = None
    to_address: str | None = None
    transaction_timestamp: datetime | None = None
    collection_data_id_hash: str | None = None

    @classmethod
    def from_graphql(cls, data: Any) -> "TokenActivity":
        """Create a TokenActivity from a token_activities node.

        Raises:
            EventDecodeError: If the node lacks a token id or transfer type.
        """
        if not isinstance(data, Mapping):
            raise EventDecodeError("Token activity node is not an object")
        token_hash = data.get("token_data_id_hash")
        transfer_type = data.get("transfer_type")
        if not token_hash or not transfer_type:
            raise EventDecodeError("Token activity node lacks token_data_id_hash or transfer_type")

        current_token_data = data.get("current_token_data") or {}
        collection_hash = (
            current_token_data.get("collection_data_id_hash")
            if isinstance(current_token_data, Mapping)
            else None
        )

        return cls(
            token_data_id_hash=str(token_hash),
            transfer_type=str(transfer_type),
            kind=event_kind_for(str(transfer_type)),
            transaction_version=parse_version(data.get("transaction_version")),
            name=str(data.get("name") or ""),
            creator_address=str(data.get("creator_address") or ""),
            from_address=data.get("from_address"),
            to_address=data.get("to_address"),
            transaction_timestamp=parse_timestamp(data.get("transaction_timestamp")),
            collection_data_id_hash=collection_hash,
        )


@dataclass(frozen=True)
class MarketplaceEvent:
    """A raw event emitted by a marketplace contract."""

    type_tag: str
    kind: EventKind
    data: Mapping[str, Any] = field(default_factory=dict)
    transaction_version: int | None = None
    account_address: str | None = None

    @classmethod
    def from_graphql(cls, data: Any) -> "MarketplaceEvent":
        """Create a MarketplaceEvent from an events node.

        Raises:
            EventDecodeError: If the node has no type.
        """
        if not isinstance(data, Mapping) or not data.get("type"):
            raise EventDecodeError("Marketplace event node lacks a type")
        payload = data.get("data")
        return cls(
            type_tag=str(data["type"]),
            kind=event_kind_for(str(data["type"])),
            data=payload if isinstance(payload, Mapping) else {},
            transaction_version=parse_version(data.get("transaction_version")),
            account_address=data.get("account_address"),
        )

    def raw_price(self, *price_fields: str) -> Any | None:
        """Return the first present raw price among ``price_fields``.

        Absent, empty and zero values are skipped; None when no field
        carries a price.
        """
        for price_field in price_fields or ("price",):
            value = self.data.get(price_field)
            if value not in (None, "", 0, "0"):
                return value
        return None

    @property
    def token_identity(self) -> tuple[str, str, str] | None:
        """Return (creator_address, collection_name, token_name) if the event carries it.

        Marketplaces embed either a ``token_metadata`` block or a
        ``token_id.token_data_id`` block.
        """
        metadata = self.data.get("token_metadata")
        if isinstance(metadata, Mapping) and metadata.get("creator_address"):
            return (
                str(metadata.get("creator_address")),
                str(metadata.get("collection_name") or ""),
                str(metadata.get("token_name") or ""),
            )
        token_id = self.data.get("token_id")
        if isinstance(token_id, Mapping):
            data_id = token_id.get("token_data_id")
            if isinstance(data_id, Mapping) and data_id.get("creator"):
                return (
                    str(data_id.get("creator")),
                    str(data_id.get("collection") or ""),
                    str(data_id.get("name") or ""),
                )
        return None


@dataclass(frozen=True)
class CollectionData:
    """On-chain collection data attached to a current token."""

    collection_name: str
    creator_address: str
    description: str = ""
    supply: int = 0
    metadata_uri: str | None = None

    @classmethod
    def from_graphql(cls, data: Any) -> "CollectionData":
        if not isinstance(data, Mapping):
            raise EventDecodeError("current_collection_data is not an object")
        try:
            supply = int(data.get("supply") or 0)
        except (TypeError, ValueError):
            supply = 0
        return cls(
            collection_name=str(data.get("collection_name") or ""),
            creator_address=str(data.get("creator_address") or ""),
            description=str(data.get("description") or ""),
            supply=supply,
            metadata_uri=data.get("metadata_uri") or None,
        )


@dataclass(frozen=True)
class TokenData:
    """A current token of a collection, used for collection metadata."""

    token_data_id_hash: str
    metadata_uri: str | None
    collection: CollectionData | None = None

    @classmethod
    def from_graphql(cls, data: Any) -> "TokenData":
        if not isinstance(data, Mapping):
            raise EventDecodeError("current_token_datas node is not an object")
        collection_data = data.get("current_collection_data")
        return cls(
            token_data_id_hash=str(data.get("token_data_id_hash") or ""),
            metadata_uri=data.get("metadata_uri") or None,
            collection=(
                CollectionData.from_graphql(collection_data) if collection_data else None
            ),
        )


@dataclass(frozen=True)
class WalletToken:
    """A token held by a wallet, from the current ownership view."""

    token_data_id: str
    token_name: str
    token_uri: str | None
    collection_name: str
    creator_address: str
    amount: int = 1

    @classmethod
    def from_graphql(cls, data: Any) -> "WalletToken":
        """Create a WalletToken from a current_token_ownerships_v2 node.

        Raises:
            EventDecodeError: If the node lacks token data or a token id.
        """
        if not isinstance(data, Mapping):
            raise EventDecodeError("Token ownership node is not an object")
        token_data = data.get("current_token_data")
        if not isinstance(token_data, Mapping) or not token_data.get("token_data_id"):
            raise EventDecodeError("Token ownership node lacks current_token_data.token_data_id")
        collection = token_data.get("current_collection")
        if not isinstance(collection, Mapping):
            collection = {}
        try:
            amount = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0
        return cls(
            token_data_id=str(token_data["token_data_id"]),
            token_name=str(token_data.get("token_name") or ""),
            token_uri=token_data.get("token_uri") or None,
            collection_name=str(collection.get("collection_name") or ""),
            creator_address=str(collection.get("creator_address") or ""),
            amount=amount,
        )


def decode_token_activities(payload: Any) -> list[TokenActivity]:
    """Decode a token_activities_aggregate response.

    Malformed nodes are skipped with a warning; a malformed envelope raises.

    Raises:
        EventDecodeError: If the response envelope is not as expected.
    """
    nodes = _require_list(payload, "token_activities_aggregate", "nodes")
    activities: list[TokenActivity] = []
    for node in nodes:
        try:
            activities.append(TokenActivity.from_graphql(node))
        except EventDecodeError as e:
            logger.warning("Skipping token activity node: %s", e)
    return activities


def decode_marketplace_events(payload: Any) -> list[MarketplaceEvent]:
    """Decode an events response.

    Raises:
        EventDecodeError: If the response envelope is not as expected.
    """
    nodes = _require_list(payload, "events")
    events: list[MarketplaceEvent] = []
    for node in nodes:
        try:
            events.append(MarketplaceEvent.from_graphql(node))
        except EventDecodeError as e:
            logger.warning("Skipping marketplace event node: %s", e)
    return events


def decode_token_datas(payload: Any) -> list[TokenData]:
    """Decode a current_token_datas response."""
    nodes = _require_list(payload, "current_token_datas")
    return [TokenData.from_graphql(node) for node in nodes]


def decode_metadata_uri(payload: Any) -> str | None:
    """Decode a token_datas response into its metadata URI."""
    nodes = _require_list(payload, "token_datas")
    if not nodes or not isinstance(nodes[0], Mapping):
        return None
    uri = nodes[0].get("metadata_uri")
    return str(uri) if uri else None


def decode_owner_count(payload: Any) -> int:
    """Decode a current_collection_ownership_v2_view_aggregate response."""
    count = _require_mapping(
        payload, "current_collection_ownership_v2_view_aggregate", "aggregate", "count"
    )
    try:
        return int(count)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"Owner count is not an integer: {count!r}") from e


def decode_wallet_tokens(payload: Any) -> list[WalletToken]:
    """Decode a current_token_ownerships_v2 response.

    Malformed nodes are skipped with a warning; a malformed envelope raises.
    """
    nodes = _require_list(payload, "current_token_ownerships_v2")
    tokens: list[WalletToken] = []
    for node in nodes:
        try:
            tokens.append(WalletToken.from_graphql(node))
        except EventDecodeError as e:
            logger.warning("Skipping token ownership node: %s", e)
    return tokens


@dataclass(frozen=True)
class FetchResult:
    """Events returned by one fetch-more-until-under-threshold loop."""

    events: tuple[TokenActivity, ...]
    last_version: int | None
    total_fetched: int
    pages_fetched: int = 0


@dataclass(frozen=True)
class CollectionMetadata:
    """Descriptive fields of a collection gathered from its current tokens."""

    description: str = ""
    total_supply: int = 0
    image_url: str | None = None
    gallery: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversionRates:
    """Exchange rates of the native coin against fiat and the secondary currency."""

    fiat: Decimal | None = None
    secondary: Decimal | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "fiat": str(self.fiat) if self.fiat is not None else None,
            "secondary": str(self.secondary) if self.secondary is not None else None,
            "fetched_at": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionRates":
        return cls(
            fiat=Decimal(data["fiat"]) if data.get("fiat") is not None else None,
            secondary=Decimal(data["secondary"]) if data.get("secondary") is not None else None,
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
        )
