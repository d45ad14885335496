"""
ORM models for the relational view of the chain.

Uniqueness that the reconciler relies on is declared here so the store
enforces it even when two writers race.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    JSON,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_indexer.database import Base, Uint256


def utcnow() -> datetime:
    """Naive UTC timestamp for the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TokenStandard(str, Enum):
    ERC721 = "ERC721"
    ERC1155 = "ERC1155"


class ListingStatus(str, Enum):
    CREATED = "CREATED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class OfferStatus(str, Enum):
    CREATED = "CREATED"
    COMPLETED = "COMPLETED"


class ImportJobStatus(str, Enum):
    QUEUED = "QUEUED"
    IMPORTING = "IMPORTING"
    FINISHED = "FINISHED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class Checkpoint(Base):
    """Highest block fully reconciled for one stream"""

    __tablename__ = "checkpoints"

    stream_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_block_processed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ImportedContract(Base):
    __tablename__ = "imported_contracts"
    __table_args__ = (UniqueConstraint("contract_address", "chain_id", name="uq_imported_contract"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_standard: Mapped[str] = mapped_column(String(16), nullable=False)
    deployed_at_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_indexed_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    import_finished: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    creator_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ImportJob(Base):
    __tablename__ = "import_jobs"
    __table_args__ = (UniqueConstraint("contract_address", "chain_id", name="uq_import_job"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ImportJobStatus.QUEUED.value, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class TransferEvent(Base):
    """Idempotency ledger: one row per applied transfer entry"""

    __tablename__ = "transfer_events"
    __table_args__ = (
        UniqueConstraint("transaction_hash", "chain_id", "tx_index", "log_index", name="uq_transfer_event"),
        Index("ix_transfer_events_token", "contract_address", "chain_id", "token_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_index: Mapped[int] = mapped_column(Integer, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    operator: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    value: Mapped[int] = mapped_column(Uint256, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Ownership(Base):
    __tablename__ = "ownerships"
    __table_args__ = (
        UniqueConstraint("contract_address", "chain_id", "token_id", "owner_address", name="uq_ownership"),
        Index("ix_ownerships_owner", "owner_address", "chain_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)
    quantity: Mapped[int] = mapped_column(Uint256, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (UniqueConstraint("contract_address", "chain_id", "token_id", name="uq_item"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    token_standard: Mapped[str] = mapped_column(String(16), nullable=False)
    supply: Mapped[int] = mapped_column(Uint256, nullable=False)
    quantity_minted: Mapped[int] = mapped_column(Uint256, nullable=False)
    creator_address: Mapped[str] = mapped_column(String(42), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_uri: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    metadata_fetched: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mint_transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (
        PrimaryKeyConstraint("chain_id", "listing_id"),
        Index("ix_listings_token", "asset_contract", "chain_id", "token_id"),
    )

    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    listing_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    lister: Mapped[str] = mapped_column(String(42), nullable=False)
    token_owner: Mapped[str] = mapped_column(String(42), nullable=False)
    asset_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quantity: Mapped[int] = mapped_column(Uint256, nullable=False)
    currency: Mapped[str] = mapped_column(String(42), nullable=False)
    reserve_price_per_token: Mapped[int] = mapped_column(Uint256, nullable=False)
    buyout_price_per_token: Mapped[int] = mapped_column(Uint256, nullable=False)
    token_type: Mapped[str] = mapped_column(String(16), nullable=False)
    listing_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ListingStatus.CREATED.value, nullable=False)
    is_closed_by_lister: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_closed_by_bidder: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    synced_log_index: Mapped[int] = mapped_column(Integer, nullable=False)


class Sale(Base):
    __tablename__ = "sales"
    __table_args__ = (
        UniqueConstraint("chain_id", "transaction_hash", name="uq_sale"),
        ForeignKeyConstraint(["chain_id", "listing_id"], ["listings.chain_id", "listings.listing_id"]),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    listing_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    asset_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    lister: Mapped[str] = mapped_column(String(42), nullable=False)
    buyer: Mapped[str] = mapped_column(String(42), nullable=False)
    quantity_bought: Mapped[int] = mapped_column(Uint256, nullable=False)
    total_price_paid: Mapped[int] = mapped_column(Uint256, nullable=False)
    currency: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        UniqueConstraint("chain_id", "transaction_hash", name="uq_offer"),
        ForeignKeyConstraint(["chain_id", "listing_id"], ["listings.chain_id", "listings.listing_id"]),
        Index("ix_offers_listing", "chain_id", "listing_id", "offeror"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    listing_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    offeror: Mapped[str] = mapped_column(String(42), nullable=False)
    listing_type: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity_wanted: Mapped[int] = mapped_column(Uint256, nullable=False)
    total_offer_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    currency: Mapped[str] = mapped_column(String(42), nullable=False)
    expiration_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=OfferStatus.CREATED.value, nullable=False)
    accepted_transaction_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Bid(Base):
    __tablename__ = "bids"
    __table_args__ = (
        UniqueConstraint("chain_id", "transaction_hash", "log_index", name="uq_bid"),
        ForeignKeyConstraint(["chain_id", "listing_id"], ["listings.chain_id", "listings.listing_id"]),
        Index("ix_bids_listing_bidder", "chain_id", "listing_id", "bidder"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    listing_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    bidder: Mapped[str] = mapped_column(String(42), nullable=False)
    quantity_wanted: Mapped[int] = mapped_column(Uint256, nullable=False)
    price_per_token: Mapped[int] = mapped_column(Uint256, nullable=False)
    total_bid_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    currency: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class RoyaltyPayment(Base):
    __tablename__ = "royalty_payments"
    __table_args__ = (UniqueConstraint("chain_id", "transaction_hash", "recipient", name="uq_royalty_payment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    listing_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    offer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    asset_contract: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    token_id: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    bps: Mapped[int] = mapped_column(Integer, nullable=False)
    total_payout: Mapped[int] = mapped_column(Uint256, nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class OutboxEvent(Base):
    """Notification rows written in the same transaction as the change they announce"""

    __tablename__ = "outbox_events"
    __table_args__ = (UniqueConstraint("uniq", name="uq_outbox_uniq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    listing_id: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    uniq: Mapped[str] = mapped_column(String(200), nullable=False)
    ver: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
