"""
Event publishing helper for the reconciler.
Inserts notification rows into the outbox table within the same transaction
as the domain rows they describe.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_indexer.events import LogRef
from marketplace_indexer.models import OutboxEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    """Typed publication interface for marketplace notifications"""

    EVENT_TYPES = {
        'LISTING_CREATED': 'listing',
        'SALE': 'sale',
        'OFFER': 'offer',
        'BID': 'bid',
        'OFFER_ACCEPTED': 'offer_accepted',
    }

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    @staticmethod
    def create_uniq_key(chain_id: int, tx_hash: str, log_index: int, event_type: str) -> str:
        """Create unique idempotency key for an event"""
        tx = tx_hash.lower()
        tx = tx[2:] if tx.startswith('0x') else tx
        return f"{chain_id}:{tx}:{log_index}:{event_type}"

    @staticmethod
    def _encode_payload(payload: Dict[str, Any]) -> str:
        # 256-bit integers are carried as strings so consumers in any language can read them
        return json.dumps(
            {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v for k, v in payload.items()},
            sort_keys=True,
        )

    async def publish(
        self,
        session: AsyncSession,
        event_type: str,
        log: LogRef,
        timestamp: int,
        payload: Dict[str, Any],
        listing_id: Optional[int] = None,
    ) -> None:
        """Insert an outbox row. Must be called inside the reconciling transaction."""
        if event_type not in self.EVENT_TYPES.values():
            raise ValueError(f"Unknown event type: {event_type}")

        values = dict(
            type=event_type,
            chain_id=self.chain_id,
            block_number=log.block_number,
            tx_hash=log.transaction_hash,
            log_index=log.log_index,
            contract_address=log.address,
            listing_id=str(listing_id) if listing_id is not None else None,
            timestamp=timestamp,
            payload_json=self._encode_payload(payload),
            uniq=self.create_uniq_key(self.chain_id, log.transaction_hash, log.log_index, event_type),
            ver=1,
            retries=0,
        )

        dialect = session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(OutboxEvent).values(**values).on_conflict_do_nothing(index_elements=["uniq"])
        await session.execute(stmt)
        logger.debug(f"[{log.block_number}] Queued {event_type} notification {values['uniq']}")

    # Convenience wrappers keep call sites typed

    async def listing_created(self, session: AsyncSession, log: LogRef, timestamp: int, listing) -> None:
        await self.publish(session, self.EVENT_TYPES['LISTING_CREATED'], log, timestamp, {
            'listing_id': listing.listing_id,
            'lister': listing.lister,
            'asset_contract': listing.asset_contract,
            'token_id': listing.token_id,
            'quantity': listing.quantity,
            'listing_type': listing.listing_type,
            'buyout_price_per_token': listing.buyout_price_per_token,
            'currency': listing.currency,
        }, listing_id=listing.listing_id)

    async def sale(self, session: AsyncSession, log: LogRef, timestamp: int, sale) -> None:
        await self.publish(session, self.EVENT_TYPES['SALE'], log, timestamp, {
            'listing_id': sale.listing_id,
            'asset_contract': sale.asset_contract,
            'token_id': sale.token_id,
            'lister': sale.lister,
            'buyer': sale.buyer,
            'quantity': sale.quantity_bought,
            'total_price_paid': sale.total_price_paid,
            'currency': sale.currency,
        }, listing_id=sale.listing_id)

    async def offer(self, session: AsyncSession, log: LogRef, timestamp: int, offer) -> None:
        await self.publish(session, self.EVENT_TYPES['OFFER'], log, timestamp, {
            'listing_id': offer.listing_id,
            'offeror': offer.offeror,
            'quantity_wanted': offer.quantity_wanted,
            'total_offer_amount': offer.total_offer_amount,
            'currency': offer.currency,
            'expiration_timestamp': offer.expiration_timestamp,
        }, listing_id=offer.listing_id)

    async def bid(self, session: AsyncSession, log: LogRef, timestamp: int, bid) -> None:
        await self.publish(session, self.EVENT_TYPES['BID'], log, timestamp, {
            'listing_id': bid.listing_id,
            'bidder': bid.bidder,
            'quantity_wanted': bid.quantity_wanted,
            'price_per_token': bid.price_per_token,
            'total_bid_amount': bid.total_bid_amount,
            'currency': bid.currency,
        }, listing_id=bid.listing_id)

    async def offer_accepted(self, session: AsyncSession, log: LogRef, timestamp: int, offer) -> None:
        await self.publish(session, self.EVENT_TYPES['OFFER_ACCEPTED'], log, timestamp, {
            'listing_id': offer.listing_id,
            'offeror': offer.offeror,
            'accepted_transaction_hash': offer.accepted_transaction_hash,
        }, listing_id=offer.listing_id)
