"""Tests for the state reconciler."""

import json

import pytest
from sqlalchemy import func, select

from marketplace_indexer.config import ZERO_ADDRESS
from marketplace_indexer.decoder import decode_logs
from marketplace_indexer.events import ListingType, OfferInfo
from marketplace_indexer.models import (
    Bid,
    Item,
    Listing,
    ListingStatus,
    Offer,
    OfferStatus,
    OutboxEvent,
    Ownership,
    RoyaltyPayment,
    Sale,
    TransferEvent,
)

from tests.helpers import (
    ALICE,
    BOB,
    CAROL,
    CURRENCY,
    EXTERNAL,
    GENESIS_TIME,
    NFT,
    auction_closed,
    erc721_transfer,
    listing_added,
    listing_info,
    listing_removed,
    listing_updated,
    new_offer,
    new_sale,
    royalty_paid,
    transfer_batch,
    transfer_single,
    tx_hash,
)


async def apply(reconciler, *logs):
    return await reconciler.apply_all(decode_logs(logs))


async def balances(session_factory, token_id=1):
    async with session_factory() as session:
        result = await session.execute(
            select(Ownership.owner_address, Ownership.quantity).where(Ownership.token_id == token_id)
        )
        return dict(result.all())


async def count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar()


async def get_listing(session_factory, listing_id):
    async with session_factory() as session:
        result = await session.execute(select(Listing).where(Listing.listing_id == listing_id))
        return result.scalar_one()


async def outbox_types(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(OutboxEvent.type).order_by(OutboxEvent.id))
        return list(result.scalars())


async def mint_and_list(reconciler, chain, info, supply=5):
    """Mint `supply` of token 1 to Alice at block 1 and list it at block 2"""
    chain.set_listing(info, block=2)
    await apply(
        reconciler,
        transfer_single(1, tx_hash(100), 0, ZERO_ADDRESS, ALICE, info.token_id, supply),
        listing_added(2, tx_hash(101), 0, info),
    )


# Transfers

@pytest.mark.asyncio
async def test_transfer_is_applied_once(reconciler, session_factory):
    log = transfer_single(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 1, 10)

    assert await apply(reconciler, log) == 1
    assert await apply(reconciler, log) == 0

    assert await balances(session_factory) == {ALICE: 10}
    assert await count(session_factory, TransferEvent) == 1


@pytest.mark.asyncio
async def test_ownership_is_conserved(reconciler, session_factory):
    await apply(
        reconciler,
        transfer_single(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 1, 10),
        transfer_single(2, tx_hash(2), 0, ALICE, BOB, 1, 3),
        transfer_single(3, tx_hash(3), 0, BOB, CAROL, 1, 2),
        transfer_single(4, tx_hash(4), 0, ALICE, ZERO_ADDRESS, 1, 1),
    )

    owners = await balances(session_factory)
    assert owners == {ALICE: 6, BOB: 1, CAROL: 2}

    async with session_factory() as session:
        item = (await session.execute(select(Item))).scalar_one()
    assert item.quantity_minted == 10
    assert item.supply == sum(owners.values()) == 9


@pytest.mark.asyncio
async def test_debit_is_floored_at_sender_balance(reconciler, session_factory):
    await apply(
        reconciler,
        transfer_single(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 1, 2),
        transfer_single(2, tx_hash(2), 0, ALICE, BOB, 1, 5),
    )

    assert await balances(session_factory) == {ALICE: 0, BOB: 5}


@pytest.mark.asyncio
async def test_batch_entries_get_their_own_ledger_rows(reconciler, session_factory):
    log = transfer_batch(1, tx_hash(1), 4, ZERO_ADDRESS, ALICE, [1, 2], [5, 6])

    await apply(reconciler, log)
    await apply(reconciler, log)

    async with session_factory() as session:
        rows = (await session.execute(select(TransferEvent).order_by(TransferEvent.tx_index))).scalars().all()
        items = (await session.execute(select(Item).order_by(Item.token_id))).scalars().all()
    assert [(r.tx_index, r.log_index, r.token_id, r.value) for r in rows] == [(0, 4, 1, 5), (1, 4, 2, 6)]
    assert [(i.token_id, i.supply) for i in items] == [(1, 5), (2, 6)]
    assert await balances(session_factory, token_id=2) == {ALICE: 6}


@pytest.mark.asyncio
async def test_second_mint_increments_multi_supply_item(reconciler, session_factory):
    await apply(
        reconciler,
        transfer_single(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 1, 5),
        transfer_single(2, tx_hash(2), 0, ZERO_ADDRESS, BOB, 1, 3),
    )

    async with session_factory() as session:
        item = (await session.execute(select(Item))).scalar_one()
    assert (item.supply, item.quantity_minted) == (8, 8)
    assert item.creator_address == ALICE
    assert item.mint_transaction_hash == tx_hash(1)
    assert item.created_at == GENESIS_TIME + 12


@pytest.mark.asyncio
async def test_burned_erc721_can_be_minted_again(reconciler, session_factory):
    await apply(
        reconciler,
        erc721_transfer(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 7),
        erc721_transfer(2, tx_hash(2), 0, ALICE, ZERO_ADDRESS, 7),
        erc721_transfer(3, tx_hash(3), 0, ZERO_ADDRESS, BOB, 7),
    )

    async with session_factory() as session:
        item = (await session.execute(select(Item).where(Item.contract_address == EXTERNAL))).scalar_one()
        owners = (await session.execute(
            select(Ownership.owner_address, Ownership.quantity).where(Ownership.contract_address == EXTERNAL)
        )).all()
    assert (item.supply, item.quantity_minted) == (1, 1)
    assert sum(quantity for _, quantity in owners) == item.supply
    assert dict(owners)[BOB] == 1


@pytest.mark.asyncio
async def test_item_creator_comes_from_token_contract(reconciler, chain, session_factory):
    chain.token_creators[(NFT.lower(), 1)] = CAROL

    await apply(reconciler, transfer_single(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 1, 5))

    async with session_factory() as session:
        item = (await session.execute(select(Item))).scalar_one()
    assert item.creator_address == CAROL
    assert item.metadata_fetched is False


# Listings

@pytest.mark.asyncio
async def test_listing_for_unknown_token_is_ignored(reconciler, session_factory):
    assert await apply(reconciler, listing_added(2, tx_hash(1), 0, listing_info(1))) == 0
    assert await count(session_factory, Listing) == 0


@pytest.mark.asyncio
async def test_listing_created_once_with_notification(reconciler, chain, session_factory):
    info = listing_info(1, quantity=5)
    await mint_and_list(reconciler, chain, info)
    await apply(reconciler, listing_added(2, tx_hash(101), 0, info))

    listing = await get_listing(session_factory, 1)
    assert listing.status == ListingStatus.CREATED.value
    assert listing.listing_type == "DIRECT"
    assert listing.quantity == 5
    assert listing.created_at == GENESIS_TIME + 24
    assert await count(session_factory, Listing) == 1
    assert await outbox_types(session_factory) == ["listing"]


@pytest.mark.asyncio
async def test_listing_update_refreshes_from_chain(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=5))
    chain.set_listing(listing_info(1, quantity=4, buyout=50), block=10)

    await apply(reconciler, listing_updated(10, tx_hash(2), 0, 1))

    listing = await get_listing(session_factory, 1)
    assert (listing.quantity, listing.buyout_price_per_token) == (4, 50)
    assert (listing.synced_block, listing.synced_log_index) == (10, 0)


@pytest.mark.asyncio
async def test_older_update_does_not_overwrite_newer_state(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=5))
    chain.set_listing(listing_info(1, quantity=5, buyout=50), block=10)
    chain.set_listing(listing_info(1, quantity=5, buyout=70), block=20)

    await apply(reconciler, listing_updated(20, tx_hash(3), 0, 1))
    await apply(reconciler, listing_updated(10, tx_hash(2), 0, 1))

    listing = await get_listing(session_factory, 1)
    assert listing.buyout_price_per_token == 70


@pytest.mark.asyncio
async def test_cancelled_listing_is_terminal(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=5))
    chain.set_listing(listing_info(1, quantity=5, buyout=50), block=10)

    await apply(reconciler, listing_removed(5, tx_hash(2), 0, 1))
    await apply(reconciler, listing_updated(10, tx_hash(3), 0, 1))

    listing = await get_listing(session_factory, 1)
    assert listing.status == ListingStatus.CANCELLED.value
    assert listing.buyout_price_per_token == 100


@pytest.mark.asyncio
async def test_mint_list_buy_scenario(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=5))
    chain.set_listing(listing_info(1, quantity=3), block=3)
    chain.set_listing(listing_info(1, quantity=0), block=4)

    await apply(
        reconciler,
        transfer_single(3, tx_hash(3), 0, ALICE, BOB, 1, 2),
        new_sale(3, tx_hash(3), 1, 1, BOB, 2, 200),
    )
    listing = await get_listing(session_factory, 1)
    assert listing.status == ListingStatus.CREATED.value
    assert listing.quantity == 3

    await apply(
        reconciler,
        transfer_single(4, tx_hash(4), 0, ALICE, BOB, 1, 3),
        new_sale(4, tx_hash(4), 1, 1, BOB, 3, 300),
    )

    listing = await get_listing(session_factory, 1)
    assert listing.status == ListingStatus.COMPLETED.value
    assert await balances(session_factory) == {ALICE: 0, BOB: 5}
    async with session_factory() as session:
        sales = (await session.execute(select(Sale).order_by(Sale.block_number))).scalars().all()
    assert [(s.quantity_bought, s.total_price_paid, s.currency) for s in sales] == [(2, 200, CURRENCY), (3, 300, CURRENCY)]
    assert await outbox_types(session_factory) == ["listing", "sale", "sale"]


@pytest.mark.asyncio
async def test_mint_transfer_list_buy_by_third_party(reconciler, chain, session_factory):
    info = listing_info(1, token_id=7, quantity=1, buyout=50)
    chain.set_listing(info, block=3)
    chain.set_listing(listing_info(1, token_id=7, quantity=0, buyout=50), block=4)

    await apply(
        reconciler,
        transfer_single(1, tx_hash(1), 0, ZERO_ADDRESS, ALICE, 7, 3),
        transfer_single(2, tx_hash(2), 0, ALICE, BOB, 7, 1),
    )
    assert await balances(session_factory, token_id=7) == {ALICE: 2, BOB: 1}

    await apply(reconciler, listing_added(3, tx_hash(3), 0, info))
    listing = await get_listing(session_factory, 1)
    assert (listing.status, listing.quantity) == (ListingStatus.CREATED.value, 1)

    await apply(
        reconciler,
        transfer_single(4, tx_hash(4), 0, ALICE, CAROL, 7, 1),
        new_sale(4, tx_hash(4), 1, 1, CAROL, 1, 50),
    )

    assert (await get_listing(session_factory, 1)).status == ListingStatus.COMPLETED.value
    assert await balances(session_factory, token_id=7) == {ALICE: 1, BOB: 1, CAROL: 1}
    async with session_factory() as session:
        sale = (await session.execute(select(Sale))).scalar_one()
    assert (sale.buyer, sale.token_id, sale.quantity_bought) == (CAROL, 7, 1)


@pytest.mark.asyncio
async def test_sale_is_recorded_once(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=5))
    chain.set_listing(listing_info(1, quantity=3), block=3)
    log = new_sale(3, tx_hash(3), 1, 1, BOB, 2, 200)

    await apply(reconciler, log)
    await apply(reconciler, log)

    assert await count(session_factory, Sale) == 1
    assert await outbox_types(session_factory) == ["listing", "sale"]


# Offers and auctions

@pytest.mark.asyncio
async def test_accepted_offer_is_completed_by_sale(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=1))
    chain.set_offer(OfferInfo(1, BOB, 1, CURRENCY, 80, GENESIS_TIME + 999), block=5)
    chain.set_listing(listing_info(1, quantity=0), block=6)

    await apply(reconciler, new_offer(5, tx_hash(5), 0, 1, BOB, 1, 80))
    async with session_factory() as session:
        offer = (await session.execute(select(Offer))).scalar_one()
    assert offer.status == OfferStatus.CREATED.value
    assert offer.expiration_timestamp == GENESIS_TIME + 999

    await apply(reconciler, new_sale(6, tx_hash(6), 0, 1, BOB, 1, 80))

    async with session_factory() as session:
        offer = (await session.execute(select(Offer))).scalar_one()
    assert offer.status == OfferStatus.COMPLETED.value
    assert offer.accepted_transaction_hash == tx_hash(6)
    assert (await get_listing(session_factory, 1)).status == ListingStatus.COMPLETED.value
    assert await outbox_types(session_factory) == ["listing", "offer", "sale", "offer_accepted"]


@pytest.mark.asyncio
async def test_auction_bid_and_bidder_close(reconciler, chain, session_factory):
    info = listing_info(1, quantity=1, reserve=30, buyout=0, listing_type=ListingType.AUCTION)
    await mint_and_list(reconciler, chain, info)
    chain.set_winning_bid(OfferInfo(1, CAROL, 1, CURRENCY, 40, GENESIS_TIME + 999), block=5)
    # The marketplace zeroes the winning bid quantity once the bidder collects
    chain.set_winning_bid(OfferInfo(1, CAROL, 0, CURRENCY, 40, GENESIS_TIME + 999), block=8)

    await apply(reconciler, new_offer(5, tx_hash(5), 0, 1, CAROL, 1, 40, ListingType.AUCTION))
    await apply(reconciler, auction_closed(8, tx_hash(8), 0, 1, CAROL, False, creator=ALICE, winner=CAROL))

    async with session_factory() as session:
        bid = (await session.execute(select(Bid))).scalar_one()
        sale = (await session.execute(select(Sale))).scalar_one()
    assert (bid.bidder, bid.price_per_token, bid.quantity_wanted) == (CAROL, 40, 1)
    assert (sale.buyer, sale.quantity_bought, sale.total_price_paid) == (CAROL, 1, 40)

    listing = await get_listing(session_factory, 1)
    assert listing.status == ListingStatus.COMPLETED.value
    assert listing.is_closed_by_bidder is True
    assert await outbox_types(session_factory) == ["listing", "offer", "bid", "sale"]


@pytest.mark.asyncio
async def test_bids_in_one_block_keep_their_own_price(reconciler, chain, session_factory):
    info = listing_info(1, quantity=2, reserve=30, buyout=0, listing_type=ListingType.AUCTION)
    await mint_and_list(reconciler, chain, info)
    # The view call at block 5 only sees the higher of the two bids
    chain.set_winning_bid(OfferInfo(1, BOB, 2, CURRENCY, 60, GENESIS_TIME + 999), block=5)

    await apply(
        reconciler,
        new_offer(5, tx_hash(5), 0, 1, CAROL, 2, 80, ListingType.AUCTION),
        new_offer(5, tx_hash(50), 1, 1, BOB, 2, 120, ListingType.AUCTION),
    )

    async with session_factory() as session:
        bids = (await session.execute(select(Bid).order_by(Bid.log_index))).scalars().all()
    assert [(b.bidder, b.price_per_token, b.total_bid_amount) for b in bids] == [(CAROL, 40, 80), (BOB, 60, 120)]


@pytest.mark.asyncio
async def test_auction_closed_by_lister_stays_open(reconciler, chain, session_factory):
    info = listing_info(1, quantity=1, listing_type=ListingType.AUCTION)
    await mint_and_list(reconciler, chain, info)
    chain.set_listing(listing_info(1, quantity=0, listing_type=ListingType.AUCTION), block=8)

    await apply(reconciler, auction_closed(8, tx_hash(8), 0, 1, ALICE, False, creator=ALICE, winner=CAROL))

    listing = await get_listing(session_factory, 1)
    assert listing.is_closed_by_lister is True
    assert listing.status == ListingStatus.CREATED.value
    assert listing.quantity == 0
    assert await count(session_factory, Sale) == 0


@pytest.mark.asyncio
async def test_cancelled_auction(reconciler, chain, session_factory):
    info = listing_info(1, quantity=1, listing_type=ListingType.AUCTION)
    await mint_and_list(reconciler, chain, info)

    await apply(reconciler, auction_closed(8, tx_hash(8), 0, 1, ALICE, True, creator=ALICE))

    assert (await get_listing(session_factory, 1)).status == ListingStatus.CANCELLED.value


# Royalties

@pytest.mark.asyncio
async def test_duplicate_royalty_is_recorded_once(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=1))
    log = royalty_paid(6, tx_hash(6), 3, 1, [ALICE, CAROL], [500, 250], 10000)

    await apply(reconciler, log)
    await apply(reconciler, log)

    async with session_factory() as session:
        payments = (await session.execute(select(RoyaltyPayment).order_by(RoyaltyPayment.id))).scalars().all()
    assert [(p.recipient, p.bps, p.amount) for p in payments] == [(ALICE, 500, 500), (CAROL, 250, 250)]
    assert all(p.token_id == 1 and p.asset_contract == NFT for p in payments)


@pytest.mark.asyncio
async def test_royalty_resolved_through_accepted_offer(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=1))
    chain.set_offer(OfferInfo(1, BOB, 1, CURRENCY, 80, GENESIS_TIME + 999), block=5)
    chain.set_listing(listing_info(1, quantity=0), block=6)
    await apply(reconciler, new_offer(5, tx_hash(5), 0, 1, BOB, 1, 80))

    # The distributor reports a listing id the marketplace never issued
    await apply(
        reconciler,
        new_sale(6, tx_hash(6), 0, 1, BOB, 1, 80),
        royalty_paid(6, tx_hash(6), 1, 99, [CAROL], [500], 80),
    )

    async with session_factory() as session:
        offer = (await session.execute(select(Offer))).scalar_one()
        payment = (await session.execute(select(RoyaltyPayment))).scalar_one()
    assert payment.offer_id == offer.id
    assert (payment.listing_id, payment.asset_contract, payment.token_id) == (1, NFT, 1)
    assert (payment.recipient, payment.amount) == (CAROL, 4)


@pytest.mark.asyncio
async def test_royalty_without_listing_or_offer_is_skipped(reconciler, session_factory):
    assert await apply(reconciler, royalty_paid(6, tx_hash(6), 0, 77, [ALICE], [500], 10000)) == 0
    assert await count(session_factory, RoyaltyPayment) == 0


@pytest.mark.asyncio
async def test_outbox_payload_carries_integers_as_strings(reconciler, chain, session_factory):
    await mint_and_list(reconciler, chain, listing_info(1, quantity=5, buyout=10**30))

    async with session_factory() as session:
        event = (await session.execute(select(OutboxEvent))).scalar_one()
    payload = json.loads(event.payload_json)
    assert payload["buyout_price_per_token"] == str(10**30)
    assert event.listing_id == "1"
    assert event.uniq == f"31337:{tx_hash(101)[2:]}:0:listing"
