#!/usr/bin/env python3
"""
Read-only query helpers over the indexed marketplace state.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, exists, func, literal, select, union_all
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_indexer.config import ZERO_ADDRESS
from marketplace_indexer.database import Uint256
from marketplace_indexer.models import (
    Listing,
    ListingStatus,
    Offer,
    Ownership,
    RoyaltyPayment,
    Sale,
    TransferEvent,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 10
ACTIVITY_EVENTS = ("mint", "transfer", "listing", "offer", "sale")


def _page_metadata(page: int, records: List[Any], total: int) -> Dict[str, int]:
    return {
        "page": page,
        "per_page": PAGE_SIZE,
        "page_count": len(records),
        "total_count": total,
    }


class MarketplaceQueries:
    """Centralized query methods for ownership, listings and activity"""

    @staticmethod
    async def token_owners(db: AsyncSession, contract_address: str, token_id: int, chain_id: int) -> Dict[str, int]:
        """Owner address -> quantity for one token, zero balances excluded"""
        result = await db.execute(
            select(Ownership.owner_address, Ownership.quantity).where(
                Ownership.contract_address == contract_address,
                Ownership.chain_id == chain_id,
                Ownership.token_id == token_id,
            )
        )
        return {owner: quantity for owner, quantity in result.all() if quantity}

    @staticmethod
    async def owned_by_wallet(db: AsyncSession, wallet_address: str, chain_id: int, contract_address: Optional[str] = None) -> Dict[str, Dict[int, int]]:
        """Contract -> {token id -> quantity} held by a wallet"""
        query = select(Ownership.contract_address, Ownership.token_id, Ownership.quantity).where(
            func.lower(Ownership.owner_address) == wallet_address.lower(),
            Ownership.chain_id == chain_id,
        )
        if contract_address:
            query = query.where(Ownership.contract_address == contract_address)

        holdings: Dict[str, Dict[int, int]] = {}
        for address, token_id, quantity in (await db.execute(query.order_by(Ownership.id))).all():
            if not quantity:
                continue
            holdings.setdefault(address, {})[token_id] = quantity
        return holdings

    @staticmethod
    async def active_listings(
        db: AsyncSession,
        chain_id: int,
        now: int,
        owner: Optional[str] = None,
        listing_type: Optional[str] = None,
        has_offers: bool = False,
        page: int = 1,
    ) -> Dict[str, Any]:
        """Open listings whose sale window contains `now`"""
        conditions = [
            Listing.chain_id == chain_id,
            Listing.status == ListingStatus.CREATED.value,
            Listing.quantity != 0,
            Listing.start_time <= now,
            Listing.end_time > now,
        ]
        if owner:
            conditions.append(func.lower(Listing.token_owner) == owner.lower())
        if listing_type:
            conditions.append(Listing.listing_type == listing_type.upper())
        if has_offers:
            conditions.append(
                exists().where(
                    Offer.chain_id == Listing.chain_id,
                    Offer.listing_id == Listing.listing_id,
                    Offer.expiration_timestamp > now,
                )
            )

        total = (await db.execute(select(func.count()).select_from(Listing).where(*conditions))).scalar() or 0
        result = await db.execute(
            select(Listing)
            .where(*conditions)
            .order_by(Listing.created_at.desc(), Listing.synced_block.desc())
            .limit(PAGE_SIZE)
            .offset(PAGE_SIZE * (page - 1))
        )
        listings = list(result.scalars())
        return {"metadata": _page_metadata(page, listings, total), "records": listings}

    @staticmethod
    async def listing_offers(db: AsyncSession, chain_id: int, listing_id: int, status: Optional[str] = None) -> List[Offer]:
        query = select(Offer).where(Offer.chain_id == chain_id, Offer.listing_id == listing_id)
        if status:
            query = query.where(Offer.status == status)
        result = await db.execute(query.order_by(Offer.block_number.desc(), Offer.id.desc()))
        return list(result.scalars())

    @staticmethod
    async def royalty_history(
        db: AsyncSession,
        chain_id: int,
        recipient: Optional[str] = None,
        asset_contract: Optional[str] = None,
        token_id: Optional[int] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        """Royalty payments, newest first"""
        conditions = [RoyaltyPayment.chain_id == chain_id]
        if recipient:
            conditions.append(func.lower(RoyaltyPayment.recipient) == recipient.lower())
        if asset_contract:
            conditions.append(RoyaltyPayment.asset_contract == asset_contract)
        if token_id is not None:
            conditions.append(RoyaltyPayment.token_id == token_id)

        total = (await db.execute(select(func.count()).select_from(RoyaltyPayment).where(*conditions))).scalar() or 0
        result = await db.execute(
            select(RoyaltyPayment)
            .where(*conditions)
            .order_by(RoyaltyPayment.created_at.desc(), RoyaltyPayment.id.desc())
            .limit(PAGE_SIZE)
            .offset(PAGE_SIZE * (page - 1))
        )
        payments = list(result.scalars())
        return {"metadata": _page_metadata(page, payments, total), "records": payments}

    @staticmethod
    async def token_activity(
        db: AsyncSession,
        contract_address: str,
        token_id: int,
        chain_id: int,
        event: Optional[str] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        """Transfers, mints, listings, offers and sales of one token, newest first"""
        if event and event not in ACTIVITY_EVENTS:
            raise ValueError(f"Unknown activity event {event!r}, expected one of {', '.join(ACTIVITY_EVENTS)}")

        transfers = select(
            case((TransferEvent.from_address == ZERO_ADDRESS, literal("mint")), else_=literal("transfer")).label("event"),
            TransferEvent.timestamp.label("created_at"),
            literal(0, Uint256).label("price"),
            TransferEvent.from_address.label("from_address"),
            TransferEvent.to_address.label("to_address"),
            TransferEvent.transaction_hash.label("transaction_hash"),
        ).where(
            TransferEvent.contract_address == contract_address,
            TransferEvent.chain_id == chain_id,
            TransferEvent.token_id == token_id,
        )

        listings = select(
            literal("listing").label("event"),
            Listing.created_at,
            case(
                (Listing.listing_type == "DIRECT", Listing.buyout_price_per_token),
                else_=Listing.reserve_price_per_token,
            ).label("price"),
            Listing.lister.label("from_address"),
            literal("-").label("to_address"),
            Listing.transaction_hash,
        ).where(
            Listing.asset_contract == contract_address,
            Listing.chain_id == chain_id,
            Listing.token_id == token_id,
        )

        listing_join = and_(Offer.chain_id == Listing.chain_id, Offer.listing_id == Listing.listing_id)
        offers = select(
            literal("offer").label("event"),
            Offer.created_at,
            Offer.total_offer_amount.label("price"),
            Offer.offeror.label("from_address"),
            Listing.lister.label("to_address"),
            Offer.transaction_hash,
        ).join(Listing, listing_join).where(
            Listing.asset_contract == contract_address,
            Listing.chain_id == chain_id,
            Listing.token_id == token_id,
        )

        sales = select(
            literal("sale").label("event"),
            Sale.created_at,
            Sale.total_price_paid.label("price"),
            Sale.buyer.label("from_address"),
            Sale.lister.label("to_address"),
            Sale.transaction_hash,
        ).where(
            Sale.asset_contract == contract_address,
            Sale.chain_id == chain_id,
            Sale.token_id == token_id,
        )

        activity = union_all(transfers, listings, offers, sales).subquery("activity")
        conditions = [activity.c.event == event] if event else []

        total = (await db.execute(select(func.count()).select_from(activity).where(*conditions))).scalar() or 0
        result = await db.execute(
            select(activity)
            .where(*conditions)
            .order_by(activity.c.created_at.desc())
            .limit(PAGE_SIZE)
            .offset(PAGE_SIZE * (page - 1))
        )
        records = [dict(row._mapping) for row in result]
        return {"metadata": _page_metadata(page, records, total), "records": records}
