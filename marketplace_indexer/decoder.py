"""
Raw log decoder.

Maps topic0 to one decode function per known event shape. Decoding never
raises: unknown topics and malformed payloads come back as UnrecognizedEvent.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from marketplace_indexer.events import (
    AuctionClosed,
    DecodedEvent,
    Erc721Transfer,
    EventKind,
    ListingAdded,
    ListingInfo,
    ListingRemoved,
    ListingType,
    ListingUpdated,
    LogRef,
    NewOffer,
    NewSale,
    RoyaltyPaid,
    TokenType,
    TransferBatch,
    TransferSingle,
    UnrecognizedEvent,
    clamp_timestamp,
)

logger = logging.getLogger(__name__)

LISTING_TUPLE = "(uint256,address,address,uint256,uint256,uint256,uint256,address,uint256,uint256,uint8,uint8)"

EVENT_SIGNATURES = {
    EventKind.TRANSFER_SINGLE: "TransferSingle(address,address,address,uint256,uint256)",
    EventKind.TRANSFER_BATCH: "TransferBatch(address,address,address,uint256[],uint256[])",
    EventKind.ERC721_TRANSFER: "Transfer(address,address,uint256)",
    EventKind.LISTING_ADDED: f"ListingAdded(uint256,address,address,{LISTING_TUPLE})",
    EventKind.LISTING_REMOVED: "ListingRemoved(uint256,address)",
    EventKind.LISTING_UPDATED: "ListingUpdated(uint256,address)",
    EventKind.NEW_SALE: "NewSale(uint256,address,address,address,uint256,uint256)",
    EventKind.NEW_OFFER: "NewOffer(uint256,address,uint8,uint256,uint256,address)",
    EventKind.AUCTION_CLOSED: "AuctionClosed(uint256,address,bool,address,address)",
    EventKind.ROYALTY_PAID: "RoyaltyPaid(uint256,address[],uint64[],uint256)",
}


def to_hex(value: Any) -> str:
    """Normalize bytes, HexBytes or hex strings to a 0x-prefixed lowercase hex string"""
    return '0x' + bytes(HexBytes(value)).hex()


def event_topic(kind: EventKind) -> str:
    return to_hex(Web3.keccak(text=EVENT_SIGNATURES[kind]))


TOPICS: Dict[EventKind, str] = {kind: event_topic(kind) for kind in EVENT_SIGNATURES}

ERC1155_TRANSFER_TOPICS = [TOPICS[EventKind.TRANSFER_SINGLE], TOPICS[EventKind.TRANSFER_BATCH]]
ERC721_TRANSFER_TOPICS = [TOPICS[EventKind.ERC721_TRANSFER]]
MARKETPLACE_TOPICS = [
    TOPICS[EventKind.LISTING_ADDED],
    TOPICS[EventKind.LISTING_REMOVED],
    TOPICS[EventKind.LISTING_UPDATED],
    TOPICS[EventKind.NEW_SALE],
    TOPICS[EventKind.NEW_OFFER],
    TOPICS[EventKind.AUCTION_CLOSED],
]
ROYALTY_TOPICS = [TOPICS[EventKind.ROYALTY_PAID]]


def checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def short(address: Optional[str]) -> str:
    """Abbreviated address for log lines"""
    if not address:
        return "?"
    return f"{address[:5]}..{address[-4:]}"


def _topic_address(topic: Any) -> str:
    return checksum('0x' + bytes(HexBytes(topic))[-20:].hex())


def _topic_int(topic: Any) -> int:
    return int.from_bytes(bytes(HexBytes(topic)), 'big')


def _data(raw_log: Mapping[str, Any]) -> bytes:
    return bytes(HexBytes(raw_log.get('data') or b''))


def log_ref(raw_log: Mapping[str, Any]) -> LogRef:
    return LogRef(
        address=checksum(raw_log['address']),
        block_number=int(raw_log['blockNumber']),
        transaction_hash=to_hex(raw_log['transactionHash']),
        transaction_index=int(raw_log.get('transactionIndex') or 0),
        log_index=int(raw_log['logIndex']),
    )


def listing_from_struct(values: Sequence[Any]) -> ListingInfo:
    """Build a ListingInfo from the 12-field listing tuple (event payload or view call)"""
    return ListingInfo(
        listing_id=int(values[0]),
        token_owner=checksum(values[1]),
        asset_contract=checksum(values[2]),
        token_id=int(values[3]),
        start_time=clamp_timestamp(values[4]),
        end_time=clamp_timestamp(values[5]),
        quantity=int(values[6]),
        currency=checksum(values[7]),
        reserve_price_per_token=int(values[8]),
        buyout_price_per_token=int(values[9]),
        token_type=TokenType(int(values[10])),
        listing_type=ListingType(int(values[11])),
    )


def _decode_transfer_single(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    token_id, value = abi_decode(['uint256', 'uint256'], data)
    return TransferSingle(
        log=ref,
        operator=_topic_address(topics[1]),
        from_address=_topic_address(topics[2]),
        to_address=_topic_address(topics[3]),
        token_id=token_id,
        value=value,
    )


def _decode_transfer_batch(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    token_ids, values = abi_decode(['uint256[]', 'uint256[]'], data)
    if len(token_ids) != len(values):
        return UnrecognizedEvent(log=ref, topic0=to_hex(topics[0]), reason="ids/values length mismatch")
    return TransferBatch(
        log=ref,
        operator=_topic_address(topics[1]),
        from_address=_topic_address(topics[2]),
        to_address=_topic_address(topics[3]),
        token_ids=tuple(token_ids),
        values=tuple(values),
    )


def _decode_erc721_transfer(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    return Erc721Transfer(
        log=ref,
        from_address=_topic_address(topics[1]),
        to_address=_topic_address(topics[2]),
        token_id=_topic_int(topics[3]),
    )


def _decode_listing_added(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    (listing,) = abi_decode([LISTING_TUPLE], data)
    return ListingAdded(
        log=ref,
        listing_id=_topic_int(topics[1]),
        asset_contract=_topic_address(topics[2]),
        lister=_topic_address(topics[3]),
        listing=listing_from_struct(listing),
    )


def _decode_listing_removed(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    return ListingRemoved(log=ref, listing_id=_topic_int(topics[1]), listing_creator=_topic_address(topics[2]))


def _decode_listing_updated(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    return ListingUpdated(log=ref, listing_id=_topic_int(topics[1]), listing_creator=_topic_address(topics[2]))


def _decode_new_sale(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    buyer, quantity_bought, total_price_paid = abi_decode(['address', 'uint256', 'uint256'], data)
    return NewSale(
        log=ref,
        listing_id=_topic_int(topics[1]),
        asset_contract=_topic_address(topics[2]),
        lister=_topic_address(topics[3]),
        buyer=checksum(buyer),
        quantity_bought=quantity_bought,
        total_price_paid=total_price_paid,
    )


def _decode_new_offer(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    quantity_wanted, total_offer_amount, currency = abi_decode(['uint256', 'uint256', 'address'], data)
    return NewOffer(
        log=ref,
        listing_id=_topic_int(topics[1]),
        offeror=_topic_address(topics[2]),
        listing_type=ListingType(_topic_int(topics[3])),
        quantity_wanted=quantity_wanted,
        total_offer_amount=total_offer_amount,
        currency=checksum(currency),
    )


def _decode_auction_closed(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    auction_creator, winning_bidder = abi_decode(['address', 'address'], data)
    return AuctionClosed(
        log=ref,
        listing_id=_topic_int(topics[1]),
        closer=_topic_address(topics[2]),
        cancelled=_topic_int(topics[3]) != 0,
        auction_creator=checksum(auction_creator),
        winning_bidder=checksum(winning_bidder),
    )


def _decode_royalty_paid(ref: LogRef, topics: List[Any], data: bytes) -> DecodedEvent:
    recipients, bps, total_payout = abi_decode(['address[]', 'uint64[]', 'uint256'], data)
    if len(recipients) != len(bps):
        return UnrecognizedEvent(log=ref, topic0=to_hex(topics[0]), reason="recipients/bps length mismatch")
    return RoyaltyPaid(
        log=ref,
        listing_id=_topic_int(topics[1]),
        recipients=tuple(checksum(r) for r in recipients),
        bps_per_recipients=tuple(int(b) for b in bps),
        total_payout=total_payout,
    )


# topic0 -> (indexed topic count including topic0, decoder)
DECODERS: Dict[str, Tuple[int, Callable[..., DecodedEvent]]] = {
    TOPICS[EventKind.TRANSFER_SINGLE]: (4, _decode_transfer_single),
    TOPICS[EventKind.TRANSFER_BATCH]: (4, _decode_transfer_batch),
    TOPICS[EventKind.ERC721_TRANSFER]: (4, _decode_erc721_transfer),
    TOPICS[EventKind.LISTING_ADDED]: (4, _decode_listing_added),
    TOPICS[EventKind.LISTING_REMOVED]: (3, _decode_listing_removed),
    TOPICS[EventKind.LISTING_UPDATED]: (3, _decode_listing_updated),
    TOPICS[EventKind.NEW_SALE]: (4, _decode_new_sale),
    TOPICS[EventKind.NEW_OFFER]: (4, _decode_new_offer),
    TOPICS[EventKind.AUCTION_CLOSED]: (4, _decode_auction_closed),
    TOPICS[EventKind.ROYALTY_PAID]: (2, _decode_royalty_paid),
}


def decode_log(raw_log: Mapping[str, Any]) -> DecodedEvent:
    """Decode one raw log into its event shape"""
    ref = log_ref(raw_log)
    topics = list(raw_log.get('topics') or [])
    if not topics:
        return UnrecognizedEvent(log=ref, topic0="", reason="anonymous log")

    topic0 = to_hex(topics[0])
    entry = DECODERS.get(topic0)
    if entry is None:
        return UnrecognizedEvent(log=ref, topic0=topic0)

    topic_count, decoder = entry
    if len(topics) != topic_count:
        # e.g. an ERC-20 Transfer shares topic0 with ERC-721 but indexes only 3 topics
        return UnrecognizedEvent(log=ref, topic0=topic0, reason=f"expected {topic_count} topics, got {len(topics)}")

    try:
        return decoder(ref, topics, _data(raw_log))
    except (DecodingError, ValueError, IndexError, OverflowError) as e:
        logger.debug(f"[{ref.block_number}] Could not decode log {ref.transaction_hash}:{ref.log_index}: {e}")
        return UnrecognizedEvent(log=ref, topic0=topic0, reason=str(e))


def decode_logs(raw_logs: Iterable[Mapping[str, Any]]) -> List[DecodedEvent]:
    """Decode logs in chain order (block number, then log index)"""
    events = [decode_log(raw_log) for raw_log in raw_logs]
    events.sort(key=lambda e: e.log.position)
    return events
