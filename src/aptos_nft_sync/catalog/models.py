"""Data models for the catalog module."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

ZERO = Decimal("0")


def _decimal(value: Any, default: Decimal | None = ZERO) -> Decimal | None:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return default


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class CollectionStats:
    """Rolled-up market statistics of a collection.

    Stored as the ``stats`` JSON document of a tracked collection, with
    decimals serialized as strings.

    Attributes:
        floor_price: Lowest active listing price, None with no listings.
        usd_floor_price: Floor converted to fiat, 0 when unavailable.
        one_day_volume: Sum of sale prices in the trailing 24 hours.
        one_day_sales: Number of sales in the trailing 24 hours.
        one_day_average_price: Volume / sales, 0 without sales.
        listed_count: Number of active listings.
        market_cap: Floor price times total supply.
        total_supply: Token supply reported at bootstrap.
        num_owners: Distinct owners, refreshed separately.
    """

    floor_price: Decimal | None = None
    usd_floor_price: Decimal = ZERO
    one_day_volume: Decimal = ZERO
    one_day_sales: int = 0
    one_day_average_price: Decimal = ZERO
    listed_count: int = 0
    market_cap: Decimal = ZERO
    total_supply: int = 0
    num_owners: int = 0

    @property
    def average_price(self) -> Decimal:
        """Alias of one_day_average_price."""
        return self.one_day_average_price

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "floor_price": _str(self.floor_price),
            "usd_floor_price": str(self.usd_floor_price),
            "one_day_volume": str(self.one_day_volume),
            "one_day_sales": self.one_day_sales,
            "one_day_average_price": str(self.one_day_average_price),
            "average_price": str(self.one_day_average_price),
            "listed_count": self.listed_count,
            "market_cap": str(self.market_cap),
            "total_supply": self.total_supply,
            "num_owners": self.num_owners,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CollectionStats":
        """Create from a stored stats document; missing fields take defaults."""
        data = data or {}
        return cls(
            floor_price=_decimal(data.get("floor_price"), None),
            usd_floor_price=_decimal(data.get("usd_floor_price")) or ZERO,
            one_day_volume=_decimal(data.get("one_day_volume")) or ZERO,
            one_day_sales=_int(data.get("one_day_sales")),
            one_day_average_price=_decimal(data.get("one_day_average_price")) or ZERO,
            listed_count=_int(data.get("listed_count")),
            market_cap=_decimal(data.get("market_cap")) or ZERO,
            total_supply=_int(data.get("total_supply")),
            num_owners=_int(data.get("num_owners")),
        )


@dataclass(frozen=True)
class SecondaryStats:
    """Stats projected into the secondary currency (``stats_secondary``)."""

    floor_price: Decimal = ZERO
    market_cap: Decimal = ZERO
    one_day_volume: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "floor_price": str(self.floor_price),
            "market_cap": str(self.market_cap),
            "one_day_volume": str(self.one_day_volume),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecondaryStats":
        data = data or {}
        return cls(
            floor_price=_decimal(data.get("floor_price")) or ZERO,
            market_cap=_decimal(data.get("market_cap")) or ZERO,
            one_day_volume=_decimal(data.get("one_day_volume")) or ZERO,
        )


@dataclass(frozen=True)
class VolumeCandidate:
    """A creator ranked by recent marketplace sale volume."""

    creator_address: str
    collection_name: str
    volume: Decimal
    sales: int = 0


class ListStatus(str, Enum):
    """Whether a wallet token is currently listed on a marketplace."""

    LISTED = "listed"
    UNLISTED = "unlisted"


@dataclass(frozen=True)
class WalletGalleryItem:
    """One token shown in a wallet gallery."""

    slug: str
    name: str
    image_url: str
    mint_address: str
    list_status: ListStatus
    price_multiplier: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "image_url": self.image_url,
            "mint_address": self.mint_address,
            "list_status": self.list_status.value,
            "price_multiplier": self.price_multiplier,
        }


@dataclass
class WalletCollection:
    """A collection held by a wallet, with the number of tokens it owns."""

    slug: str
    name: str
    image_url: str
    owned_asset_count: int = 0
    hidden: bool = False
    manual_add: bool = False
    manual_owned_asset_count: int = 0
    chain: str = "aptos"

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "image_url": self.image_url,
            "owned_asset_count": self.owned_asset_count,
            "hidden": self.hidden,
            "manual_add": self.manual_add,
            "manual_owned_asset_count": self.manual_owned_asset_count,
            "chain": self.chain,
        }


@dataclass
class WalletSnapshot:
    """Collections and gallery of one wallet, on-chain holdings plus active listings."""

    wallet: str
    collections: list[WalletCollection] = field(default_factory=list)
    gallery: list[WalletGalleryItem] = field(default_factory=list)

    def add(self, item: WalletGalleryItem, collection_name: str, chain: str) -> None:
        """Append a gallery item and count it against its collection."""
        self.gallery.append(item)
        for collection in self.collections:
            if collection.slug == item.slug:
                collection.owned_asset_count += 1
                return
        self.collections.append(
            WalletCollection(
                slug=item.slug,
                name=collection_name,
                image_url=item.image_url,
                owned_asset_count=1,
                chain=chain,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "collections": [c.to_dict() for c in self.collections],
            "gallery": [g.to_dict() for g in self.gallery],
        }
