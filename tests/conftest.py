"""
Shared fixtures: a fresh SQLite database per test and an in-memory chain.
"""

import pytest_asyncio

from marketplace_indexer.backfill import BackfillCoordinator
from marketplace_indexer.checkpoints import CheckpointStore
from marketplace_indexer.database import create_engine, create_session_factory, init_models
from marketplace_indexer.publisher import EventPublisher
from marketplace_indexer.reconciler import StateReconciler

from tests.helpers import CHAIN_ID, NFT, FakeChain, make_core_stream


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def chain():
    return FakeChain(head=100)


@pytest_asyncio.fixture
async def reconciler(session_factory, chain):
    return StateReconciler(session_factory, chain, EventPublisher(CHAIN_ID), CHAIN_ID, nft_contract_address=NFT)


@pytest_asyncio.fixture
async def checkpoints(session_factory):
    return CheckpointStore(session_factory)


@pytest_asyncio.fixture
async def coordinator(chain, reconciler, checkpoints):
    return BackfillCoordinator(chain, reconciler, checkpoints, min_span=10)


@pytest_asyncio.fixture
async def core_stream():
    return make_core_stream()
