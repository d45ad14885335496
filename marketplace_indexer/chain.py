#!/usr/bin/env python3
"""
Chain connection for the indexer.

HTTP JSON-RPC (AsyncWeb3) for requests, one long-lived websocket for the
newHeads subscription. The subscription never reconnects: when it drops,
`connection_lost` is set and the process is expected to exit and restart
from its checkpoints.
"""

import os
import json
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import websockets
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception

from marketplace_indexer.config import ZERO_ADDRESS
from marketplace_indexer.decoder import checksum, listing_from_struct, short
from marketplace_indexer.events import ListingInfo, OfferInfo, clamp_timestamp

logger = logging.getLogger(__name__)

ERC721_INTERFACE_ID = bytes.fromhex("80ac58cd")
ERC1155_INTERFACE_ID = bytes.fromhex("d9b67a26")

# Failed view calls on arbitrary contracts
CALL_ERRORS = (ContractLogicError, BadFunctionCallOutput, Web3Exception, ValueError)

# Transport failures worth a bounded retry
TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


def load_abi(name: str) -> List[Dict[str, Any]]:
    """Load a contract ABI shipped with the package"""
    full_path = os.path.join(os.path.dirname(__file__), 'abis', f'{name}.json')
    with open(full_path, 'r') as f:
        data = json.load(f)
    # Accept Brownie-style artifacts too
    if isinstance(data, dict) and 'abi' in data:
        return data['abi']
    return data


def block_tag(block_number: Optional[int]):
    """Block identifier for a view call; only None means the chain head"""
    return 'latest' if block_number is None else block_number


def offer_from_struct(values) -> OfferInfo:
    return OfferInfo(
        listing_id=int(values[0]),
        offeror=checksum(values[1]),
        quantity_wanted=int(values[2]),
        currency=checksum(values[3]),
        price_per_token=int(values[4]),
        expiration_timestamp=clamp_timestamp(values[5]),
    )


class ChainConnection:
    """RPC access plus the newHeads subscription"""

    MAX_BLOCK_CACHE = 1000

    def __init__(
        self,
        http_url: str,
        ws_url: Optional[str],
        chain_id: int,
        marketplace_address: Optional[str] = None,
        retries: int = 3,
    ):
        self.http_url = http_url
        self.ws_url = ws_url
        self.chain_id = chain_id
        self.retries = max(1, retries)
        self.w3 = AsyncWeb3(AsyncHTTPProvider(http_url))
        self.connection_lost = asyncio.Event()
        self.connection_lost_reason: Optional[str] = None
        self._closing = False
        self._ws_id = 0
        self._block_cache: Dict[int, int] = {}
        self._token_abi = load_abi('Token')
        self._marketplace = None
        if marketplace_address:
            self._marketplace = self.w3.eth.contract(
                address=Web3.to_checksum_address(marketplace_address), abi=load_abi('Marketplace')
            )

    async def _with_retry(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        for attempt in range(1, self.retries + 1):
            try:
                return await call()
            except TRANSIENT_ERRORS as e:
                if attempt >= self.retries:
                    logger.error(f"❌ RPC {label} failed after {attempt} attempts: {e}")
                    raise
                logger.warning(f"RPC {label} failed (attempt {attempt}/{self.retries}): {e}")
                await asyncio.sleep(0.5 * attempt)

    def _token(self, address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=self._token_abi)

    def _require_marketplace(self):
        if self._marketplace is None:
            raise RuntimeError("Marketplace contract address is not configured")
        return self._marketplace

    # Block and log access

    async def block_number(self) -> int:
        async def call():
            return await self.w3.eth.block_number
        return int(await self._with_retry('eth_blockNumber', call))

    async def get_logs(self, addresses: List[str], topics: List[str], from_block: int, to_block: int) -> List[Any]:
        params = {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': [Web3.to_checksum_address(a) for a in addresses],
            'topics': [topics],
        }
        return list(await self._with_retry('eth_getLogs', lambda: self.w3.eth.get_logs(params)))

    async def get_block_timestamp(self, block_number: int) -> int:
        """Block timestamp with a bounded cache"""
        if block_number in self._block_cache:
            return self._block_cache[block_number]

        if len(self._block_cache) >= self.MAX_BLOCK_CACHE:
            oldest_block = min(self._block_cache.keys())
            del self._block_cache[oldest_block]

        block = await self._with_retry('eth_getBlockByNumber', lambda: self.w3.eth.get_block(block_number))
        timestamp = int(block['timestamp'])
        self._block_cache[block_number] = timestamp
        return timestamp

    async def get_code(self, address: str, block_number: int) -> bytes:
        code = await self._with_retry(
            'eth_getCode',
            lambda: self.w3.eth.get_code(Web3.to_checksum_address(address), block_identifier=block_number),
        )
        return bytes(code)

    async def find_deployer(self, address: str, block_number: int) -> Optional[str]:
        """Sender of the transaction that created `address` in `block_number`, if it was a direct deployment"""
        block = await self._with_retry(
            'eth_getBlockByNumber', lambda: self.w3.eth.get_block(block_number, full_transactions=True)
        )
        for tx in block['transactions']:
            if tx.get('to') is not None:
                continue
            receipt = await self._with_retry(
                'eth_getTransactionReceipt', lambda: self.w3.eth.get_transaction_receipt(tx['hash'])
            )
            created = receipt.get('contractAddress')
            if created and created.lower() == address.lower():
                return checksum(tx['from'])
        return None

    # Marketplace views, read at the block of the event being reconciled

    async def get_listing(self, listing_id: int, block_number: Optional[int] = None) -> ListingInfo:
        fn = self._require_marketplace().functions.listings(listing_id)
        values = await self._with_retry('listings', lambda: fn.call(block_identifier=block_tag(block_number)))
        return listing_from_struct(values)

    async def get_offer(self, listing_id: int, offeror: str, block_number: Optional[int] = None) -> OfferInfo:
        fn = self._require_marketplace().functions.offers(listing_id, Web3.to_checksum_address(offeror))
        values = await self._with_retry('offers', lambda: fn.call(block_identifier=block_tag(block_number)))
        return offer_from_struct(values)

    async def get_winning_bid(self, listing_id: int, block_number: Optional[int] = None) -> OfferInfo:
        fn = self._require_marketplace().functions.winningBid(listing_id)
        values = await self._with_retry('winningBid', lambda: fn.call(block_identifier=block_tag(block_number)))
        return offer_from_struct(values)

    # Optional token contract views; a revert or empty return means "not available"

    async def supports_interface(self, address: str, interface_id: bytes) -> bool:
        fn = self._token(address).functions.supportsInterface(interface_id)
        try:
            return bool(await self._with_retry('supportsInterface', fn.call))
        except CALL_ERRORS as e:
            logger.debug(f"supportsInterface({interface_id.hex()}) failed for {short(address)}: {e}")
            return False

    async def get_owner(self, address: str) -> Optional[str]:
        try:
            owner = await self._with_retry('owner', self._token(address).functions.owner().call)
        except CALL_ERRORS as e:
            logger.debug(f"owner() not available on {short(address)}: {e}")
            return None
        if not owner or owner == ZERO_ADDRESS:
            return None
        return checksum(owner)

    async def get_contract_name(self, address: str) -> Optional[str]:
        try:
            name = await self._with_retry('name', self._token(address).functions.name().call)
        except CALL_ERRORS as e:
            logger.debug(f"name() not available on {short(address)}: {e}")
            return None
        return name or None

    async def get_token_creator(self, address: str, token_id: int) -> Optional[str]:
        try:
            creator = await self._with_retry('creator', self._token(address).functions.creator(token_id).call)
        except CALL_ERRORS as e:
            logger.debug(f"creator({token_id}) not available on {short(address)}: {e}")
            return None
        if not creator or creator == ZERO_ADDRESS:
            return None
        return checksum(creator)

    async def get_token_uri(self, address: str, token_id: int, token_standard: str) -> Optional[str]:
        functions = self._token(address).functions
        fn = functions.tokenURI(token_id) if token_standard == "ERC721" else functions.uri(token_id)
        try:
            return await self._with_retry('tokenURI', fn.call) or None
        except CALL_ERRORS as e:
            logger.debug(f"token URI for {short(address)}#{token_id} not available: {e}")
            return None

    # newHeads subscription

    async def _ws_subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["newHeads"],
        }
        await ws.send(json.dumps(payload))

        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")

    def _signal_connection_lost(self, reason: str) -> None:
        if self.connection_lost.is_set():
            return
        self.connection_lost_reason = reason
        self.connection_lost.set()

    async def subscribe_new_heads(self, on_head: Callable[[int], Awaitable[None]]) -> None:
        """Deliver new block numbers to `on_head`, in arrival order, until the socket closes"""
        if not self.ws_url:
            raise RuntimeError("rpc_ws_url is required for the newHeads subscription")

        try:
            async with websockets.connect(self.ws_url, ping_interval=20, ping_timeout=20) as ws:
                sub_id = await self._ws_subscribe(ws)
                logger.info(f"✅ Subscribed to newHeads on chain {self.chain_id}: {sub_id}")

                async for message in ws:
                    payload = json.loads(message)
                    if payload.get("method") != "eth_subscription":
                        continue
                    header = payload.get("params", {}).get("result") or {}
                    number = header.get("number")
                    if number is not None:
                        await on_head(int(number, 16) if isinstance(number, str) else int(number))
        except (websockets.exceptions.ConnectionClosed, OSError) as e:
            logger.error(f"❌ Subscription connection lost: {e}")
            self._signal_connection_lost(str(e))
            return

        if not self._closing:
            logger.error("❌ Subscription closed by the node")
            self._signal_connection_lost("subscription closed")

    async def close(self) -> None:
        self._closing = True
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
