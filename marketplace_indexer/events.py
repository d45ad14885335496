"""
Decoded event shapes.

Every raw log decodes to exactly one of these frozen dataclasses. Logs the
indexer does not understand become UnrecognizedEvent instead of raising.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Tuple, Union

MAX_TIMESTAMP = 2147483647


def clamp_timestamp(value: int) -> int:
    """Clamp chain time values to what a signed 32-bit column holds"""
    return min(int(value), MAX_TIMESTAMP)


class EventKind(str, Enum):
    TRANSFER_SINGLE = "TransferSingle"
    TRANSFER_BATCH = "TransferBatch"
    ERC721_TRANSFER = "Transfer"
    LISTING_ADDED = "ListingAdded"
    LISTING_REMOVED = "ListingRemoved"
    LISTING_UPDATED = "ListingUpdated"
    NEW_SALE = "NewSale"
    NEW_OFFER = "NewOffer"
    AUCTION_CLOSED = "AuctionClosed"
    ROYALTY_PAID = "RoyaltyPaid"
    UNRECOGNIZED = "Unrecognized"


class TokenType(IntEnum):
    ERC1155 = 0
    ERC721 = 1


class ListingType(IntEnum):
    DIRECT = 0
    AUCTION = 1


@dataclass(frozen=True)
class LogRef:
    """Where a log sits on chain"""
    address: str
    block_number: int
    transaction_hash: str
    transaction_index: int
    log_index: int

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class ListingInfo:
    """The marketplace `listings(id)` struct"""
    listing_id: int
    token_owner: str
    asset_contract: str
    token_id: int
    start_time: int
    end_time: int
    quantity: int
    currency: str
    reserve_price_per_token: int
    buyout_price_per_token: int
    token_type: TokenType
    listing_type: ListingType


@dataclass(frozen=True)
class OfferInfo:
    """The marketplace `offers(id, offeror)` / `winningBid(id)` struct"""
    listing_id: int
    offeror: str
    quantity_wanted: int
    currency: str
    price_per_token: int
    expiration_timestamp: int


@dataclass(frozen=True)
class TransferEntry:
    token_id: int
    value: int
    tx_index: int


@dataclass(frozen=True)
class TransferSingle:
    log: LogRef
    operator: str
    from_address: str
    to_address: str
    token_id: int
    value: int
    kind: EventKind = EventKind.TRANSFER_SINGLE

    def entries(self) -> Tuple[TransferEntry, ...]:
        return (TransferEntry(self.token_id, self.value, 0),)


@dataclass(frozen=True)
class TransferBatch:
    log: LogRef
    operator: str
    from_address: str
    to_address: str
    token_ids: Tuple[int, ...]
    values: Tuple[int, ...]
    kind: EventKind = EventKind.TRANSFER_BATCH

    def entries(self) -> Tuple[TransferEntry, ...]:
        return tuple(
            TransferEntry(token_id, value, i)
            for i, (token_id, value) in enumerate(zip(self.token_ids, self.values))
        )


@dataclass(frozen=True)
class Erc721Transfer:
    log: LogRef
    from_address: str
    to_address: str
    token_id: int
    kind: EventKind = EventKind.ERC721_TRANSFER

    @property
    def operator(self) -> None:
        return None

    def entries(self) -> Tuple[TransferEntry, ...]:
        return (TransferEntry(self.token_id, 1, 0),)


@dataclass(frozen=True)
class ListingAdded:
    log: LogRef
    listing_id: int
    asset_contract: str
    lister: str
    listing: ListingInfo
    kind: EventKind = EventKind.LISTING_ADDED


@dataclass(frozen=True)
class ListingRemoved:
    log: LogRef
    listing_id: int
    listing_creator: str
    kind: EventKind = EventKind.LISTING_REMOVED


@dataclass(frozen=True)
class ListingUpdated:
    log: LogRef
    listing_id: int
    listing_creator: str
    kind: EventKind = EventKind.LISTING_UPDATED


@dataclass(frozen=True)
class NewSale:
    log: LogRef
    listing_id: int
    asset_contract: str
    lister: str
    buyer: str
    quantity_bought: int
    total_price_paid: int
    kind: EventKind = EventKind.NEW_SALE


@dataclass(frozen=True)
class NewOffer:
    log: LogRef
    listing_id: int
    offeror: str
    listing_type: ListingType
    quantity_wanted: int
    total_offer_amount: int
    currency: str
    kind: EventKind = EventKind.NEW_OFFER


@dataclass(frozen=True)
class AuctionClosed:
    log: LogRef
    listing_id: int
    closer: str
    cancelled: bool
    auction_creator: str
    winning_bidder: str
    kind: EventKind = EventKind.AUCTION_CLOSED


@dataclass(frozen=True)
class RoyaltyPaid:
    log: LogRef
    listing_id: int
    recipients: Tuple[str, ...]
    bps_per_recipients: Tuple[int, ...]
    total_payout: int
    kind: EventKind = EventKind.ROYALTY_PAID


@dataclass(frozen=True)
class UnrecognizedEvent:
    log: LogRef
    topic0: str
    reason: str = "unknown topic"
    kind: EventKind = EventKind.UNRECOGNIZED


TokenTransfer = Union[TransferSingle, TransferBatch, Erc721Transfer]

DecodedEvent = Union[
    TransferSingle,
    TransferBatch,
    Erc721Transfer,
    ListingAdded,
    ListingRemoved,
    ListingUpdated,
    NewSale,
    NewOffer,
    AuctionClosed,
    RoyaltyPaid,
    UnrecognizedEvent,
]
