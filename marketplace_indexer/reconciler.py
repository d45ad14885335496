"""
State reconciler.

Applies decoded events to the relational view. Backfill and live delivery
both end here, so the final state does not depend on which path saw an
event first.

Each event is applied in one transaction; any chain reads it needs are done
before the transaction opens. Transfer entries are guarded by the
TransferEvent ledger, which is written in the same transaction as the
ownership delta it records.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_indexer.config import ZERO_ADDRESS
from marketplace_indexer.database import run_in_transaction
from marketplace_indexer.decoder import short
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
    TokenTransfer,
)
from marketplace_indexer.models import (
    Bid,
    ImportedContract,
    Item,
    Listing,
    ListingStatus,
    Offer,
    OfferStatus,
    Ownership,
    RoyaltyPayment,
    Sale,
    TokenStandard,
    TransferEvent,
)
from marketplace_indexer.publisher import EventPublisher

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


class StateReconciler:
    """Applies decoded events to ownership, item, listing, sale, offer, bid and royalty rows"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        chain,
        publisher: EventPublisher,
        chain_id: int,
        nft_contract_address: Optional[str] = None,
        attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.publisher = publisher
        self.chain_id = chain_id
        self.nft_contract_address = nft_contract_address.lower() if nft_contract_address else None
        self.attempts = attempts
        self._handlers: Dict[EventKind, Callable[[Any], Awaitable[bool]]] = {
            EventKind.TRANSFER_SINGLE: self._on_transfer,
            EventKind.TRANSFER_BATCH: self._on_transfer,
            EventKind.ERC721_TRANSFER: self._on_transfer,
            EventKind.LISTING_ADDED: self._on_listing_added,
            EventKind.LISTING_REMOVED: self._on_listing_removed,
            EventKind.LISTING_UPDATED: self._on_listing_updated,
            EventKind.NEW_SALE: self._on_new_sale,
            EventKind.NEW_OFFER: self._on_new_offer,
            EventKind.AUCTION_CLOSED: self._on_auction_closed,
            EventKind.ROYALTY_PAID: self._on_royalty_paid,
        }

    async def apply(self, event: DecodedEvent) -> bool:
        """Apply one event. Returns True if it changed anything."""
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.debug(
                f"[{event.log.block_number}] Skipping unrecognized log {event.log.transaction_hash}:{event.log.log_index}"
            )
            return False
        return await handler(event)

    async def apply_all(self, events: Iterable[DecodedEvent]) -> int:
        """Apply events strictly in the given order"""
        applied = 0
        for event in events:
            if await self.apply(event):
                applied += 1
        return applied

    async def _transaction(self, work: Callable[[AsyncSession], Awaitable[bool]], ref: LogRef, label: str) -> bool:
        return await run_in_transaction(
            self.session_factory,
            work,
            attempts=self.attempts,
            label=f"{label} {ref.transaction_hash}:{ref.log_index}",
        )

    # Lookups

    async def _listing(self, session: AsyncSession, listing_id: int) -> Optional[Listing]:
        result = await session.execute(
            select(Listing).where(Listing.chain_id == self.chain_id, Listing.listing_id == listing_id)
        )
        return result.scalar_one_or_none()

    async def _item(self, session: AsyncSession, contract_address: str, token_id: int) -> Optional[Item]:
        result = await session.execute(
            select(Item).where(
                Item.contract_address == contract_address,
                Item.chain_id == self.chain_id,
                Item.token_id == token_id,
            )
        )
        return result.scalar_one_or_none()

    async def _ownership(self, session: AsyncSession, contract_address: str, token_id: int, owner: str) -> Optional[Ownership]:
        result = await session.execute(
            select(Ownership).where(
                Ownership.contract_address == contract_address,
                Ownership.chain_id == self.chain_id,
                Ownership.token_id == token_id,
                Ownership.owner_address == owner,
            )
        )
        return result.scalar_one_or_none()

    async def _sale_exists(self, session: AsyncSession, tx_hash: str) -> bool:
        result = await session.execute(
            select(Sale.id).where(Sale.chain_id == self.chain_id, Sale.transaction_hash == tx_hash)
        )
        return result.scalar_one_or_none() is not None

    # Transfers

    async def _on_transfer(self, event: TokenTransfer) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)
        standard = TokenStandard.ERC721 if isinstance(event, Erc721Transfer) else TokenStandard.ERC1155
        is_mint = event.from_address == ZERO_ADDRESS
        is_burn = event.to_address == ZERO_ADDRESS

        token_creators: Dict[int, str] = {}
        if is_mint and self.nft_contract_address == ref.address.lower():
            for entry in event.entries():
                creator = await self.chain.get_token_creator(ref.address, entry.token_id)
                if creator:
                    token_creators[entry.token_id] = creator

        async def work(session: AsyncSession) -> bool:
            applied = 0
            for entry in event.entries():
                seen = await session.execute(
                    select(TransferEvent.id).where(
                        TransferEvent.transaction_hash == ref.transaction_hash,
                        TransferEvent.chain_id == self.chain_id,
                        TransferEvent.tx_index == entry.tx_index,
                        TransferEvent.log_index == ref.log_index,
                    )
                )
                if seen.scalar_one_or_none() is not None:
                    continue

                session.add(TransferEvent(
                    transaction_hash=ref.transaction_hash,
                    chain_id=self.chain_id,
                    tx_index=entry.tx_index,
                    log_index=ref.log_index,
                    block_number=ref.block_number,
                    contract_address=ref.address,
                    operator=event.operator,
                    from_address=event.from_address,
                    to_address=event.to_address,
                    token_id=entry.token_id,
                    value=entry.value,
                    timestamp=timestamp,
                ))

                if not is_mint:
                    await self._debit(session, ref, event.from_address, entry.token_id, entry.value, timestamp)
                if not is_burn:
                    await self._credit(session, ref, event.to_address, entry.token_id, entry.value, timestamp)
                if is_mint:
                    await self._record_mint(
                        session, ref, event.to_address, entry.token_id, entry.value, standard,
                        token_creators.get(entry.token_id), timestamp,
                    )
                elif is_burn:
                    await self._record_burn(session, ref, entry.token_id, entry.value)
                applied += 1

            if applied:
                logger.debug(f"[{ref.block_number}] Applied {applied} transfer entries from {ref.transaction_hash}")
            return applied > 0

        return await self._transaction(work, ref, "transfer")

    async def _debit(self, session: AsyncSession, ref: LogRef, owner: str, token_id: int, value: int, timestamp: int) -> None:
        ownership = await self._ownership(session, ref.address, token_id, owner)
        if ownership is None:
            logger.warning(f"[{ref.block_number}] No ownership row for {short(owner)} on {short(ref.address)}#{token_id}")
            return
        ownership.quantity = ownership.quantity - min(value, ownership.quantity)
        ownership.updated_at = timestamp

    async def _credit(self, session: AsyncSession, ref: LogRef, owner: str, token_id: int, value: int, timestamp: int) -> None:
        ownership = await self._ownership(session, ref.address, token_id, owner)
        if ownership is None:
            session.add(Ownership(
                contract_address=ref.address,
                chain_id=self.chain_id,
                token_id=token_id,
                owner_address=owner,
                quantity=value,
                updated_at=timestamp,
            ))
            # Later entries of the same batch must see this row
            await session.flush()
            return
        ownership.quantity = ownership.quantity + value
        ownership.updated_at = timestamp

    async def _collection_creator(self, session: AsyncSession, contract_address: str) -> Optional[str]:
        result = await session.execute(
            select(ImportedContract.creator_address).where(
                ImportedContract.contract_address == contract_address,
                ImportedContract.chain_id == self.chain_id,
            )
        )
        creator = result.scalar_one_or_none()
        return creator if creator and creator != ZERO_ADDRESS else None

    async def _record_mint(
        self,
        session: AsyncSession,
        ref: LogRef,
        minter: str,
        token_id: int,
        value: int,
        standard: TokenStandard,
        creator: Optional[str],
        timestamp: int,
    ) -> None:
        item = await self._item(session, ref.address, token_id)
        if item is None:
            creator = creator or await self._collection_creator(session, ref.address) or minter
            session.add(Item(
                contract_address=ref.address,
                chain_id=self.chain_id,
                token_id=token_id,
                token_standard=standard.value,
                supply=value,
                quantity_minted=value,
                creator_address=creator,
                metadata_fetched=False,
                created_at=timestamp,
                mint_transaction_hash=ref.transaction_hash,
            ))
            await session.flush()
            logger.info(f"[{ref.block_number}] 🪙 New item {short(ref.address)}#{token_id} minted to {short(minter)}")
            return

        # A burned ERC-721 can be minted again; only multi-supply items count towards quantity_minted
        item.supply = item.supply + value
        if item.token_standard == TokenStandard.ERC1155.value:
            item.quantity_minted = item.quantity_minted + value

    async def _record_burn(self, session: AsyncSession, ref: LogRef, token_id: int, value: int) -> None:
        item = await self._item(session, ref.address, token_id)
        if item is not None:
            item.supply = item.supply - min(value, item.supply)

    # Listings

    def _refresh(self, listing: Listing, info: ListingInfo, ref: LogRef, timestamp: int) -> bool:
        """Overwrite the mutable listing fields with the chain's view at `ref`"""
        if listing.status != ListingStatus.CREATED.value:
            return False
        if ref.position < (listing.synced_block, listing.synced_log_index):
            return False

        listing.token_owner = info.token_owner
        listing.start_time = info.start_time
        listing.end_time = info.end_time
        listing.quantity = info.quantity
        listing.currency = info.currency
        listing.reserve_price_per_token = info.reserve_price_per_token
        listing.buyout_price_per_token = info.buyout_price_per_token
        listing.updated_at = timestamp
        listing.synced_block = ref.block_number
        listing.synced_log_index = ref.log_index
        return True

    async def _on_listing_added(self, event: ListingAdded) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)
        info = event.listing

        async def work(session: AsyncSession) -> bool:
            if await self._listing(session, event.listing_id) is not None:
                logger.debug(f"[{ref.block_number}] Listing {event.listing_id} already recorded")
                return False

            if await self._item(session, event.asset_contract, info.token_id) is None:
                logger.info(
                    f"[{ref.block_number}] Ignoring listing {event.listing_id} for unknown token "
                    f"{short(event.asset_contract)}#{info.token_id}"
                )
                return False

            listing = Listing(
                chain_id=self.chain_id,
                listing_id=event.listing_id,
                lister=event.lister,
                token_owner=info.token_owner,
                asset_contract=event.asset_contract,
                token_id=info.token_id,
                start_time=info.start_time,
                end_time=info.end_time,
                quantity=info.quantity,
                currency=info.currency,
                reserve_price_per_token=info.reserve_price_per_token,
                buyout_price_per_token=info.buyout_price_per_token,
                token_type=info.token_type.name,
                listing_type=info.listing_type.name,
                status=ListingStatus.CREATED.value,
                is_closed_by_lister=False,
                is_closed_by_bidder=False,
                transaction_hash=ref.transaction_hash,
                created_at=timestamp,
                updated_at=timestamp,
                synced_block=ref.block_number,
                synced_log_index=ref.log_index,
            )
            session.add(listing)
            await session.flush()
            await self.publisher.listing_created(session, ref, timestamp, listing)
            logger.info(f"[{ref.block_number}] 📋 Listing {event.listing_id} created by {short(event.lister)}")
            return True

        return await self._transaction(work, ref, "listing")

    async def _on_listing_removed(self, event: ListingRemoved) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)

        async def work(session: AsyncSession) -> bool:
            listing = await self._listing(session, event.listing_id)
            if listing is None:
                logger.debug(f"[{ref.block_number}] ListingRemoved for unknown listing {event.listing_id}")
                return False
            if listing.status != ListingStatus.CREATED.value:
                return False
            listing.status = ListingStatus.CANCELLED.value
            listing.updated_at = timestamp
            logger.info(f"[{ref.block_number}] ❌ Listing {event.listing_id} cancelled")
            return True

        return await self._transaction(work, ref, "listing removal")

    async def _on_listing_updated(self, event: ListingUpdated) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)
        info = await self.chain.get_listing(event.listing_id, ref.block_number)

        async def work(session: AsyncSession) -> bool:
            listing = await self._listing(session, event.listing_id)
            if listing is None:
                logger.debug(f"[{ref.block_number}] ListingUpdated for unknown listing {event.listing_id}")
                return False
            return self._refresh(listing, info, ref, timestamp)

        return await self._transaction(work, ref, "listing update")

    async def _on_new_sale(self, event: NewSale) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)
        info = await self.chain.get_listing(event.listing_id, ref.block_number)

        async def work(session: AsyncSession) -> bool:
            listing = await self._listing(session, event.listing_id)
            if listing is None:
                logger.warning(f"[{ref.block_number}] NewSale for unknown listing {event.listing_id}")
                return False

            changed = False
            if not await self._sale_exists(session, ref.transaction_hash):
                sale = Sale(
                    chain_id=self.chain_id,
                    listing_id=event.listing_id,
                    transaction_hash=ref.transaction_hash,
                    asset_contract=event.asset_contract,
                    token_id=listing.token_id,
                    lister=event.lister,
                    buyer=event.buyer,
                    quantity_bought=event.quantity_bought,
                    total_price_paid=event.total_price_paid,
                    currency=listing.currency,
                    block_number=ref.block_number,
                    created_at=timestamp,
                )
                session.add(sale)
                await session.flush()
                await self.publisher.sale(session, ref, timestamp, sale)
                logger.info(
                    f"[{ref.block_number}] 💰 Sale on listing {event.listing_id}: "
                    f"{event.quantity_bought} to {short(event.buyer)} for {event.total_price_paid}"
                )
                await self._accept_offer(session, event, timestamp)
                changed = True

            changed = self._refresh(listing, info, ref, timestamp) or changed
            if listing.status == ListingStatus.CREATED.value and info.quantity == 0:
                listing.status = ListingStatus.COMPLETED.value
                listing.updated_at = timestamp
                changed = True
            return changed

        return await self._transaction(work, ref, "sale")

    async def _accept_offer(self, session: AsyncSession, event: NewSale, timestamp: int) -> None:
        """A sale to someone holding an open offer on the listing is that offer being accepted"""
        result = await session.execute(
            select(Offer)
            .where(
                Offer.chain_id == self.chain_id,
                Offer.listing_id == event.listing_id,
                Offer.offeror == event.buyer,
                Offer.status == OfferStatus.CREATED.value,
            )
            .order_by(Offer.block_number.desc(), Offer.id.desc())
            .limit(1)
        )
        offer = result.scalar_one_or_none()
        if offer is None:
            return
        offer.status = OfferStatus.COMPLETED.value
        offer.accepted_transaction_hash = event.log.transaction_hash
        offer.updated_at = timestamp
        await self.publisher.offer_accepted(session, event.log, timestamp, offer)
        logger.info(f"[{event.log.block_number}] 🤝 Offer {offer.transaction_hash} accepted on listing {event.listing_id}")

    async def _on_auction_closed(self, event: AuctionClosed) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)
        closed_by_lister = not event.cancelled and event.closer == event.auction_creator
        closed_by_bidder = not event.cancelled and not closed_by_lister

        info = await self.chain.get_listing(event.listing_id, ref.block_number) if closed_by_lister else None
        winning_bid = await self.chain.get_winning_bid(event.listing_id, ref.block_number) if closed_by_bidder else None

        async def work(session: AsyncSession) -> bool:
            listing = await self._listing(session, event.listing_id)
            if listing is None:
                logger.warning(f"[{ref.block_number}] AuctionClosed for unknown listing {event.listing_id}")
                return False
            if listing.status != ListingStatus.CREATED.value:
                return False

            if event.cancelled:
                listing.status = ListingStatus.CANCELLED.value
                listing.updated_at = timestamp
                logger.info(f"[{ref.block_number}] ❌ Auction {event.listing_id} cancelled")
                return True

            if closed_by_lister:
                self._refresh(listing, info, ref, timestamp)
                listing.is_closed_by_lister = True
                listing.updated_at = timestamp
                logger.info(f"[{ref.block_number}] Auction {event.listing_id} closed by lister")
                return True

            if not await self._sale_exists(session, ref.transaction_hash):
                quantity = await self._winning_quantity(session, event, listing)
                sale = Sale(
                    chain_id=self.chain_id,
                    listing_id=event.listing_id,
                    transaction_hash=ref.transaction_hash,
                    asset_contract=listing.asset_contract,
                    token_id=listing.token_id,
                    lister=listing.lister,
                    buyer=event.winning_bidder,
                    quantity_bought=quantity,
                    total_price_paid=winning_bid.price_per_token * quantity,
                    currency=winning_bid.currency,
                    block_number=ref.block_number,
                    created_at=timestamp,
                )
                session.add(sale)
                await session.flush()
                await self.publisher.sale(session, ref, timestamp, sale)

            listing.is_closed_by_bidder = True
            listing.status = ListingStatus.COMPLETED.value
            listing.updated_at = timestamp
            logger.info(f"[{ref.block_number}] 🔨 Auction {event.listing_id} won by {short(event.winning_bidder)}")
            return True

        return await self._transaction(work, ref, "auction close")

    async def _winning_quantity(self, session: AsyncSession, event: AuctionClosed, listing: Listing) -> int:
        """Quantity of the winning bid; the chain zeroes it when the bidder closes, so use the recorded bid"""
        result = await session.execute(
            select(Bid.quantity_wanted)
            .where(
                Bid.chain_id == self.chain_id,
                Bid.listing_id == event.listing_id,
                Bid.bidder == event.winning_bidder,
            )
            .order_by(Bid.block_number.desc(), Bid.log_index.desc())
            .limit(1)
        )
        quantity = result.scalar_one_or_none()
        return quantity if quantity else listing.quantity

    # Offers and bids

    async def _on_new_offer(self, event: NewOffer) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)
        info = await self.chain.get_listing(event.listing_id, ref.block_number)
        # Only the expiration is read from the chain; amounts come from the event
        if event.listing_type == ListingType.AUCTION:
            offer_info = await self.chain.get_winning_bid(event.listing_id, ref.block_number)
        else:
            offer_info = await self.chain.get_offer(event.listing_id, event.offeror, ref.block_number)

        async def work(session: AsyncSession) -> bool:
            listing = await self._listing(session, event.listing_id)
            if listing is None:
                logger.warning(f"[{ref.block_number}] NewOffer for unknown listing {event.listing_id}")
                return False

            changed = False
            existing = await session.execute(
                select(Offer.id).where(Offer.chain_id == self.chain_id, Offer.transaction_hash == ref.transaction_hash)
            )
            if existing.scalar_one_or_none() is None:
                offer = Offer(
                    chain_id=self.chain_id,
                    listing_id=event.listing_id,
                    transaction_hash=ref.transaction_hash,
                    offeror=event.offeror,
                    listing_type=event.listing_type.name,
                    quantity_wanted=event.quantity_wanted,
                    total_offer_amount=event.total_offer_amount,
                    currency=event.currency,
                    expiration_timestamp=offer_info.expiration_timestamp,
                    status=OfferStatus.CREATED.value,
                    block_number=ref.block_number,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
                session.add(offer)
                await session.flush()
                await self.publisher.offer(session, ref, timestamp, offer)
                logger.info(f"[{ref.block_number}] 📨 Offer on listing {event.listing_id} from {short(event.offeror)}")
                changed = True

            if listing.listing_type == ListingType.AUCTION.name:
                changed = await self._append_bid(session, event, timestamp) or changed

            return self._refresh(listing, info, ref, timestamp) or changed

        return await self._transaction(work, ref, "offer")

    async def _append_bid(self, session: AsyncSession, event: NewOffer, timestamp: int) -> bool:
        """Record the bid carried by the event; the chain only knows the latest winning bid"""
        ref = event.log
        existing = await session.execute(
            select(Bid.id).where(
                Bid.chain_id == self.chain_id,
                Bid.transaction_hash == ref.transaction_hash,
                Bid.log_index == ref.log_index,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return False

        price_per_token = event.total_offer_amount // event.quantity_wanted if event.quantity_wanted else 0
        bid = Bid(
            chain_id=self.chain_id,
            listing_id=event.listing_id,
            transaction_hash=ref.transaction_hash,
            log_index=ref.log_index,
            bidder=event.offeror,
            quantity_wanted=event.quantity_wanted,
            price_per_token=price_per_token,
            total_bid_amount=event.total_offer_amount,
            currency=event.currency,
            block_number=ref.block_number,
            created_at=timestamp,
        )
        session.add(bid)
        await session.flush()
        await self.publisher.bid(session, ref, timestamp, bid)
        return True

    # Royalties

    async def _on_royalty_paid(self, event: RoyaltyPaid) -> bool:
        ref = event.log
        timestamp = await self.chain.get_block_timestamp(ref.block_number)

        async def work(session: AsyncSession) -> bool:
            # A royalty follows either a direct sale or an accepted offer; either lookup may miss
            listing = await self._listing(session, event.listing_id)
            result = await session.execute(
                select(Offer).where(
                    Offer.chain_id == self.chain_id,
                    Offer.accepted_transaction_hash == ref.transaction_hash,
                )
            )
            offer = result.scalars().first()
            if listing is None and offer is None:
                logger.warning(
                    f"[{ref.block_number}] RoyaltyPaid {ref.transaction_hash} matches no listing or offer, skipping"
                )
                return False
            if listing is None:
                listing = await self._listing(session, offer.listing_id)

            applied = 0
            for recipient, bps in zip(event.recipients, event.bps_per_recipients):
                existing = await session.execute(
                    select(RoyaltyPayment.id).where(
                        RoyaltyPayment.chain_id == self.chain_id,
                        RoyaltyPayment.transaction_hash == ref.transaction_hash,
                        RoyaltyPayment.recipient == recipient,
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    continue
                session.add(RoyaltyPayment(
                    chain_id=self.chain_id,
                    transaction_hash=ref.transaction_hash,
                    recipient=recipient,
                    listing_id=listing.listing_id if listing is not None else offer.listing_id,
                    offer_id=offer.id if offer is not None else None,
                    asset_contract=listing.asset_contract if listing is not None else None,
                    token_id=listing.token_id if listing is not None else None,
                    bps=bps,
                    total_payout=event.total_payout,
                    amount=event.total_payout * bps // BPS_DENOMINATOR,
                    block_number=ref.block_number,
                    created_at=timestamp,
                ))
                await session.flush()
                applied += 1

            if applied:
                logger.info(f"[{ref.block_number}] 👑 Recorded {applied} royalty payments for listing {event.listing_id}")
            return applied > 0

        return await self._transaction(work, ref, "royalty")
