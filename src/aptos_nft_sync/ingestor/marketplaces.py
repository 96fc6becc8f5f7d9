"""Supported Aptos NFT marketplaces and event-kind lookup tables."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# Raw on-chain prices are integer octas (1 APT = 10^8 octas)
PRICE_DECIMALS = 8

WITHDRAW_TRANSFER_TYPE = "0x3::token::WithdrawEvent"
DEPOSIT_TRANSFER_TYPE = "0x3::token::DepositEvent"


class EventKind(str, Enum):
    """Closed set of event kinds the reconciler understands.

    Resolved once when a payload is decoded; anything outside the lookup
    table is UNKNOWN and keeps its raw tag on the decoded event.
    """

    WITHDRAW = "withdraw"
    DEPOSIT = "deposit"
    LIST = "list"
    FILL = "fill"
    CANCEL = "cancel"
    UNKNOWN = "unknown"


# Keyed by the last "::" segment of a move event type, generics stripped
EVENT_KIND_BY_SUFFIX: dict[str, EventKind] = {
    "WithdrawEvent": EventKind.WITHDRAW,
    "DepositEvent": EventKind.DEPOSIT,
    # sale-type events
    "BuyEvent": EventKind.FILL,
    "ListingFilledEvent": EventKind.FILL,
    "AcceptCollectionBidEvent": EventKind.FILL,
    "FillCollectionBidEvent": EventKind.FILL,
    "CollectionOfferFilledEvent": EventKind.FILL,
    "BuyListingEvent": EventKind.FILL,
    "SellEvent": EventKind.FILL,
    # delistings
    "DelistEvent": EventKind.CANCEL,
    "ListingCanceledEvent": EventKind.CANCEL,
    "CancelListingEvent": EventKind.CANCEL,
    # listings
    "ListEvent": EventKind.LIST,
    "ListingPlacedEvent": EventKind.LIST,
    "InsertListingEvent": EventKind.LIST,
    "ChangePriceEvent": EventKind.LIST,
}


def event_kind_for(type_tag: str) -> EventKind:
    """Map a raw move event type to its EventKind.

    Args:
        type_tag: Full type, e.g. "0x2c7b...::events::BuyEvent".

    Returns:
        The matching EventKind, UNKNOWN when the suffix is not recognized.
    """
    base = type_tag.split("<", 1)[0]
    suffix = base.rsplit("::", 1)[-1]
    return EVENT_KIND_BY_SUFFIX.get(suffix, EventKind.UNKNOWN)


def short_event_type(type_tag: str) -> str:
    """Return the last "::" segment of an event type (as stored on records)."""
    return type_tag.split("<", 1)[0].rsplit("::", 1)[-1]


@dataclass(frozen=True)
class Marketplace:
    """A marketplace contract queried for prices and volume."""

    name: str
    contract_address: str
    # Tried in order; fills and listings may carry the price under different keys
    price_fields: tuple[str, ...] = ("price",)
    volume_pages: int = 1


# Priority order used by the price resolver
SUPPORTED_MARKETPLACES: tuple[Marketplace, ...] = (
    Marketplace(
        name="topaz",
        contract_address="0x2c7bccf7b31baf770fdbcc768d9e9cb3d87805e255355df5db32ac9a669010a2",
        volume_pages=10,
    ),
    Marketplace(
        name="bluemove",
        contract_address="0xd1fd99c1944b84d1670a2536417e997864ad12303d19eac725891691b04d614e",
    ),
    Marketplace(
        name="souffle",
        contract_address="0xf6994988bd40261af9431cd6dd3fcf765569719e66322c7a05cc78a89cd366d4",
    ),
    Marketplace(
        name="okx",
        contract_address="0x1e6009ce9d288f3d5031c06ca0b19a334214ead798a0cb38808485bd6d997a43",
        price_fields=("executed_price", "min_price"),
    ),
)
