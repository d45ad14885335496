"""
Token metadata fetcher.

Fills the metadata columns of Item rows after they are minted. Runs outside
the reconciliation transactions; a metadata failure never blocks indexing,
the item just gets a placeholder name.
"""

import json
import base64
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from marketplace_indexer.decoder import short
from marketplace_indexer.models import ImportedContract, Item

logger = logging.getLogger(__name__)

# Chain lookups that failed in transport; the item is retried on a later pass
LOOKUP_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def normalize_uri(uri: str, gateway: str, token_id: Optional[int] = None) -> str:
    """Rewrite IPFS URIs to the HTTP gateway and substitute ERC-1155 `{id}` placeholders"""
    uri = uri.strip()
    gateway = gateway.rstrip('/')
    if token_id is not None and '{id}' in uri:
        uri = uri.replace('{id}', f"{token_id:064x}")

    if uri.startswith('ipfs://'):
        path = uri[len('ipfs://'):]
        if path.startswith('ipfs/'):
            path = path[len('ipfs/'):]
        return f"{gateway}/{path}"
    if '/ipfs/' in uri:
        return f"{gateway}/{uri.split('/ipfs/', 1)[1]}"
    return uri


def parse_json(body: Any) -> Dict[str, Any]:
    """Metadata bodies that are not a JSON object count as empty"""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode('utf-8', errors='replace')
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def placeholder_name(collection_name: str, token_id: int) -> str:
    return f"{collection_name}-{token_id}"


@dataclass
class TokenMetadata:
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    metadata_uri: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    complete: bool = True


class MetadataFetcher:
    """Resolves token URIs over HTTP(S)/IPFS and stores the result on Item rows"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        chain,
        chain_id: int,
        ipfs_gateway: str = "https://ipfs.io/ipfs",
        timeout: float = 5.0,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.chain_id = chain_id
        self.ipfs_gateway = ipfs_gateway
        self.timeout = timeout
        self._collection_names: Dict[str, str] = {}
        self._deferred: Set[int] = set()

    async def get_json(self, http: aiohttp.ClientSession, uri: str) -> Dict[str, Any]:
        if uri.startswith('data:'):
            header, _, payload = uri.partition(',')
            if header.endswith(';base64'):
                return parse_json(base64.b64decode(payload))
            return parse_json(payload)

        headers = {'Accept': 'application/json', 'Accept-Encoding': 'identity'}
        async with http.get(uri, headers=headers) as response:
            response.raise_for_status()
            return parse_json(await response.read())

    async def resolve(
        self,
        http: aiohttp.ClientSession,
        contract_address: str,
        token_id: int,
        token_standard: str,
        collection_name: str,
    ) -> TokenMetadata:
        """Fetch one token's metadata, degrading to a placeholder name on any failure"""
        try:
            metadata_uri = await self.chain.get_token_uri(contract_address, token_id, token_standard)
        except LOOKUP_ERRORS as e:
            logger.warning(f"Token URI lookup failed for {short(contract_address)}#{token_id}, will retry: {e!r}")
            return TokenMetadata(name=placeholder_name(collection_name, token_id), complete=False)
        if not metadata_uri:
            return TokenMetadata(name=placeholder_name(collection_name, token_id))

        url = normalize_uri(metadata_uri, self.ipfs_gateway, token_id)
        try:
            data = await self.get_json(http, url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Metadata fetch failed for {short(contract_address)}#{token_id} ({url}): {e}")
            data = {}

        name = data.get('name')
        if not name or not isinstance(name, str):
            name = placeholder_name(collection_name, token_id)
        return TokenMetadata(
            name=name,
            description=data.get('description') if isinstance(data.get('description'), str) else None,
            image=data.get('image') if isinstance(data.get('image'), str) else None,
            metadata_uri=metadata_uri,
            raw=data,
        )

    async def _collection_name(self, contract_address: str) -> str:
        key = contract_address.lower()
        if key in self._collection_names:
            return self._collection_names[key]

        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportedContract.name).where(
                    ImportedContract.contract_address == contract_address,
                    ImportedContract.chain_id == self.chain_id,
                )
            )
            name = result.scalar_one_or_none()
        if not name:
            try:
                name = await self.chain.get_contract_name(contract_address)
            except LOOKUP_ERRORS as e:
                logger.warning(f"Collection name lookup failed for {short(contract_address)}: {e!r}")
                return f"{contract_address}-{self.chain_id}"
        name = name or f"{contract_address}-{self.chain_id}"
        self._collection_names[key] = name
        return name

    async def enrich_items(self, contract_address: Optional[str] = None, limit: int = 100) -> int:
        """Fill metadata for up to `limit` items that have not been fetched yet"""
        async with self.session_factory() as session:
            query = select(Item.id, Item.contract_address, Item.token_id, Item.token_standard).where(
                Item.chain_id == self.chain_id,
                Item.metadata_fetched.is_(False),
            )
            if contract_address:
                query = query.where(Item.contract_address == contract_address)
            if self._deferred:
                query = query.where(Item.id.not_in(self._deferred))
            pending = (await session.execute(query.order_by(Item.id).limit(limit))).all()

        if not pending:
            return 0

        updated = 0
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as http:
            for item_id, address, token_id, token_standard in pending:
                collection_name = await self._collection_name(address)
                metadata = await self.resolve(http, address, token_id, token_standard, collection_name)
                async with self.session_factory() as session:
                    async with session.begin():
                        item = await session.get(Item, item_id)
                        item.name = metadata.name
                        item.description = metadata.description
                        item.image = metadata.image
                        item.metadata_uri = metadata.metadata_uri
                        item.metadata_json = metadata.raw or None
                        item.metadata_fetched = metadata.complete
                if not metadata.complete:
                    self._deferred.add(item_id)
                updated += 1

        logger.info(f"🖼️ Stored metadata for {updated} items")
        return updated

    def retry_deferred(self) -> None:
        """Let items whose chain lookup failed be picked up again"""
        self._deferred.clear()
