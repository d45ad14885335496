"""
Test helpers: raw log builders and an in-memory chain.
"""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import encode

from marketplace_indexer.backfill import Stream
from marketplace_indexer.checkpoints import CORE_STREAM
from marketplace_indexer.config import ZERO_ADDRESS
from marketplace_indexer.decoder import (
    ERC1155_TRANSFER_TOPICS,
    LISTING_TUPLE,
    MARKETPLACE_TOPICS,
    ROYALTY_TOPICS,
    TOPICS,
)
from marketplace_indexer.events import EventKind, ListingInfo, ListingType, OfferInfo, TokenType

CHAIN_ID = 31337

# Digit-only addresses are already in checksum form
NFT = "0x" + "1" * 40
MARKETPLACE = "0x" + "2" * 40
ROYALTY = "0x" + "3" * 40
EXTERNAL = "0x" + "4" * 40
ALICE = "0x" + "5" * 40
BOB = "0x" + "6" * 40
CAROL = "0x" + "7" * 40
OPERATOR = "0x" + "8" * 40
CURRENCY = "0x" + "9" * 40

GENESIS_TIME = 1_700_000_000


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def topic_address(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def topic_int(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def raw_log(address: str, block: int, tx: str, log_index: int, topics: List[str], data: bytes = b"", tx_index: int = 0) -> Dict[str, Any]:
    return {
        "address": address,
        "blockNumber": block,
        "transactionHash": tx,
        "transactionIndex": tx_index,
        "logIndex": log_index,
        "topics": topics,
        "data": "0x" + data.hex(),
    }


def transfer_single(block, tx, log_index, from_address, to_address, token_id, value, contract=NFT, operator=OPERATOR):
    return raw_log(
        contract, block, tx, log_index,
        [TOPICS[EventKind.TRANSFER_SINGLE], topic_address(operator), topic_address(from_address), topic_address(to_address)],
        encode(["uint256", "uint256"], [token_id, value]),
    )


def transfer_batch(block, tx, log_index, from_address, to_address, token_ids, values, contract=NFT, operator=OPERATOR):
    return raw_log(
        contract, block, tx, log_index,
        [TOPICS[EventKind.TRANSFER_BATCH], topic_address(operator), topic_address(from_address), topic_address(to_address)],
        encode(["uint256[]", "uint256[]"], [list(token_ids), list(values)]),
    )


def erc721_transfer(block, tx, log_index, from_address, to_address, token_id, contract=EXTERNAL):
    return raw_log(
        contract, block, tx, log_index,
        [TOPICS[EventKind.ERC721_TRANSFER], topic_address(from_address), topic_address(to_address), topic_int(token_id)],
    )


def erc20_transfer(block, tx, log_index, from_address, to_address, amount, contract=EXTERNAL):
    return raw_log(
        contract, block, tx, log_index,
        [TOPICS[EventKind.ERC721_TRANSFER], topic_address(from_address), topic_address(to_address)],
        encode(["uint256"], [amount]),
    )


def listing_info(
    listing_id: int,
    token_owner: str = ALICE,
    token_id: int = 1,
    quantity: int = 1,
    start_time: int = GENESIS_TIME,
    end_time: int = GENESIS_TIME + 86400,
    reserve: int = 0,
    buyout: int = 100,
    asset_contract: str = NFT,
    listing_type: ListingType = ListingType.DIRECT,
    token_type: TokenType = TokenType.ERC1155,
) -> ListingInfo:
    return ListingInfo(
        listing_id=listing_id,
        token_owner=token_owner,
        asset_contract=asset_contract,
        token_id=token_id,
        start_time=start_time,
        end_time=end_time,
        quantity=quantity,
        currency=CURRENCY,
        reserve_price_per_token=reserve,
        buyout_price_per_token=buyout,
        token_type=token_type,
        listing_type=listing_type,
    )


def listing_tuple(info: ListingInfo) -> Tuple:
    return (
        info.listing_id, info.token_owner, info.asset_contract, info.token_id, info.start_time,
        info.end_time, info.quantity, info.currency, info.reserve_price_per_token,
        info.buyout_price_per_token, int(info.token_type), int(info.listing_type),
    )


def listing_added(block, tx, log_index, info: ListingInfo, lister=ALICE):
    return raw_log(
        MARKETPLACE, block, tx, log_index,
        [TOPICS[EventKind.LISTING_ADDED], topic_int(info.listing_id), topic_address(info.asset_contract), topic_address(lister)],
        encode([LISTING_TUPLE], [listing_tuple(info)]),
    )


def listing_removed(block, tx, log_index, listing_id, creator=ALICE):
    return raw_log(
        MARKETPLACE, block, tx, log_index,
        [TOPICS[EventKind.LISTING_REMOVED], topic_int(listing_id), topic_address(creator)],
    )


def listing_updated(block, tx, log_index, listing_id, creator=ALICE):
    return raw_log(
        MARKETPLACE, block, tx, log_index,
        [TOPICS[EventKind.LISTING_UPDATED], topic_int(listing_id), topic_address(creator)],
    )


def new_sale(block, tx, log_index, listing_id, buyer, quantity, total_price, lister=ALICE, asset_contract=NFT):
    return raw_log(
        MARKETPLACE, block, tx, log_index,
        [TOPICS[EventKind.NEW_SALE], topic_int(listing_id), topic_address(asset_contract), topic_address(lister)],
        encode(["address", "uint256", "uint256"], [buyer, quantity, total_price]),
    )


def new_offer(block, tx, log_index, listing_id, offeror, quantity, total_amount, listing_type=ListingType.DIRECT):
    return raw_log(
        MARKETPLACE, block, tx, log_index,
        [TOPICS[EventKind.NEW_OFFER], topic_int(listing_id), topic_address(offeror), topic_int(int(listing_type))],
        encode(["uint256", "uint256", "address"], [quantity, total_amount, CURRENCY]),
    )


def auction_closed(block, tx, log_index, listing_id, closer, cancelled, creator=ALICE, winner=ZERO_ADDRESS):
    return raw_log(
        MARKETPLACE, block, tx, log_index,
        [TOPICS[EventKind.AUCTION_CLOSED], topic_int(listing_id), topic_address(closer), topic_int(1 if cancelled else 0)],
        encode(["address", "address"], [creator, winner]),
    )


def royalty_paid(block, tx, log_index, listing_id, recipients, bps, total_payout):
    return raw_log(
        ROYALTY, block, tx, log_index,
        [TOPICS[EventKind.ROYALTY_PAID], topic_int(listing_id)],
        encode(["address[]", "uint64[]", "uint256"], [list(recipients), list(bps), total_payout]),
    )


class FakeChain:
    """Serves logs and view calls from memory, versioned by block number"""

    def __init__(self, head: int = 100, chain_id: int = CHAIN_ID):
        self.head = head
        self.chain_id = chain_id
        self.logs: List[Dict[str, Any]] = []
        self.get_logs_calls: List[Tuple[int, int]] = []
        self.get_code_calls = 0
        self.fail_get_logs: Optional[Exception] = None
        self.fail_on_block: Optional[int] = None
        self.fail_token_uri: Optional[Exception] = None
        self.heads: List[int] = []
        self.connection_lost = asyncio.Event()
        self.connection_lost_reason = None

        self._listings: Dict[int, List[Tuple[int, ListingInfo]]] = defaultdict(list)
        self._offers: Dict[Tuple[int, str], List[Tuple[int, OfferInfo]]] = defaultdict(list)
        self._winning_bids: Dict[int, List[Tuple[int, OfferInfo]]] = defaultdict(list)
        self.deployed_at: Dict[str, int] = {}
        self.interfaces: Dict[str, set] = defaultdict(set)
        self.owners: Dict[str, str] = {}
        self.names: Dict[str, str] = {}
        self.deployers: Dict[str, str] = {}
        self.token_creators: Dict[Tuple[str, int], str] = {}
        self.token_uris: Dict[Tuple[str, int], str] = {}

    # Setup

    def add_logs(self, *logs: Dict[str, Any]) -> None:
        self.logs.extend(logs)

    def set_listing(self, info: ListingInfo, block: int = 0) -> None:
        self._listings[info.listing_id].append((block, info))
        self._listings[info.listing_id].sort(key=lambda v: v[0])

    def set_offer(self, info: OfferInfo, block: int = 0) -> None:
        key = (info.listing_id, info.offeror.lower())
        self._offers[key].append((block, info))
        self._offers[key].sort(key=lambda v: v[0])

    def set_winning_bid(self, info: OfferInfo, block: int = 0) -> None:
        self._winning_bids[info.listing_id].append((block, info))
        self._winning_bids[info.listing_id].sort(key=lambda v: v[0])

    def deploy(self, address: str, block: int, interfaces=(), owner=None, name=None, deployer=None) -> None:
        key = address.lower()
        self.deployed_at[key] = block
        self.interfaces[key].update(interfaces)
        if owner:
            self.owners[key] = owner
        if name:
            self.names[key] = name
        if deployer:
            self.deployers[key] = deployer

    @staticmethod
    def _at(versions, block: Optional[int]):
        chosen = None
        for version_block, value in versions:
            if block is None or version_block <= block:
                chosen = value
        return chosen

    # ChainConnection interface

    async def block_number(self) -> int:
        return self.head

    async def get_logs(self, addresses, topics, from_block, to_block):
        self.get_logs_calls.append((from_block, to_block))
        if self.fail_get_logs is not None:
            raise self.fail_get_logs
        if self.fail_on_block is not None and from_block <= self.fail_on_block <= to_block:
            raise RuntimeError(f"node error at block {self.fail_on_block}")
        wanted = {a.lower() for a in addresses}
        return [
            log for log in self.logs
            if from_block <= log["blockNumber"] <= to_block
            and log["address"].lower() in wanted
            and log["topics"][0] in topics
        ]

    async def get_block_timestamp(self, block_number: int) -> int:
        return GENESIS_TIME + block_number * 12

    async def get_code(self, address: str, block_number: int) -> bytes:
        self.get_code_calls += 1
        deployed = self.deployed_at.get(address.lower())
        if deployed is None or block_number < deployed:
            return b""
        return b"\x60\x80\x60\x40"

    async def find_deployer(self, address: str, block_number: int) -> Optional[str]:
        return self.deployers.get(address.lower())

    async def get_listing(self, listing_id: int, block_number: Optional[int] = None) -> ListingInfo:
        info = self._at(self._listings[listing_id], block_number)
        if info is None:
            raise ValueError(f"no listing {listing_id}")
        return info

    async def get_offer(self, listing_id: int, offeror: str, block_number: Optional[int] = None) -> OfferInfo:
        info = self._at(self._offers[(listing_id, offeror.lower())], block_number)
        return info or OfferInfo(listing_id, ZERO_ADDRESS, 0, ZERO_ADDRESS, 0, 0)

    async def get_winning_bid(self, listing_id: int, block_number: Optional[int] = None) -> OfferInfo:
        info = self._at(self._winning_bids[listing_id], block_number)
        return info or OfferInfo(listing_id, ZERO_ADDRESS, 0, ZERO_ADDRESS, 0, 0)

    async def supports_interface(self, address: str, interface_id: bytes) -> bool:
        return interface_id in self.interfaces.get(address.lower(), set())

    async def get_owner(self, address: str) -> Optional[str]:
        return self.owners.get(address.lower())

    async def get_contract_name(self, address: str) -> Optional[str]:
        return self.names.get(address.lower())

    async def get_token_creator(self, address: str, token_id: int) -> Optional[str]:
        return self.token_creators.get((address.lower(), token_id))

    async def get_token_uri(self, address: str, token_id: int, token_standard: str) -> Optional[str]:
        if self.fail_token_uri is not None:
            raise self.fail_token_uri
        return self.token_uris.get((address.lower(), token_id))

    async def subscribe_new_heads(self, on_head) -> None:
        """Deliver the queued heads, then drop like a node closing the socket"""
        for number in self.heads:
            await on_head(number)
        self.connection_lost_reason = "subscription closed"
        self.connection_lost.set()

    async def close(self) -> None:
        pass


def make_core_stream(chunk_size: int = 10, start_block: int = 1) -> Stream:
    return Stream(
        stream_id=CORE_STREAM,
        addresses=[NFT, MARKETPLACE, ROYALTY],
        topics=ERC1155_TRANSFER_TOPICS + MARKETPLACE_TOPICS + ROYALTY_TOPICS,
        start_block=start_block,
        chunk_size=chunk_size,
        label="core",
        topics_by_address={
            NFT.lower(): list(ERC1155_TRANSFER_TOPICS),
            MARKETPLACE.lower(): list(MARKETPLACE_TOPICS),
            ROYALTY.lower(): list(ROYALTY_TOPICS),
        },
    )
