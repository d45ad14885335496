#!/usr/bin/env python3
"""
Indexer service: wires the chain connection, reconciler, backfill, live
subscription and import worker together and runs them until the
subscription drops or a task fails.
"""

import asyncio
import logging
from typing import List, Optional

from marketplace_indexer.backfill import BackfillCoordinator, Stream
from marketplace_indexer.chain import ChainConnection
from marketplace_indexer.checkpoints import CORE_STREAM, CheckpointStore
from marketplace_indexer.config import Settings
from marketplace_indexer.database import check_database_connection, create_engine, create_session_factory, init_models
from marketplace_indexer.decoder import ERC1155_TRANSFER_TOPICS, MARKETPLACE_TOPICS, ROYALTY_TOPICS
from marketplace_indexer.errors import ConfigError
from marketplace_indexer.importer import CollectionImporter, ImportJobQueue
from marketplace_indexer.live import LiveSubscriber
from marketplace_indexer.metadata import MetadataFetcher
from marketplace_indexer.publisher import EventPublisher
from marketplace_indexer.reconciler import StateReconciler

logger = logging.getLogger(__name__)


def core_stream(settings: Settings) -> Stream:
    """The stream covering the configured NFT, marketplace and royalty contracts"""
    topics_by_role = {
        'nft': ERC1155_TRANSFER_TOPICS,
        'marketplace': MARKETPLACE_TOPICS,
        'royalty_distributor': ROYALTY_TOPICS,
    }
    contracts = settings.core_contracts()
    if not contracts:
        raise ConfigError("No core contract addresses configured")

    topics: List[str] = []
    topics_by_address = {}
    for role, address in contracts.items():
        topics_by_address[address.lower()] = list(topics_by_role[role])
        topics.extend(t for t in topics_by_role[role] if t not in topics)

    return Stream(
        stream_id=CORE_STREAM,
        addresses=list(contracts.values()),
        topics=topics,
        start_block=settings.start_block,
        chunk_size=settings.backfill_chunk_size,
        label="core",
        topics_by_address=topics_by_address,
    )


class IndexerService:
    """Owns every long-running component of the indexer"""

    METADATA_INTERVAL = 30

    def __init__(self, settings: Settings, chain: Optional[ChainConnection] = None, engine=None):
        self.settings = settings
        self.engine = engine or create_engine(settings.get_async_database_url(), echo=settings.sql_debug)
        isolation = "SERIALIZABLE" if self.engine.dialect.name == "postgresql" else None
        self.session_factory = create_session_factory(self.engine, isolation_level=isolation)

        self.chain = chain or ChainConnection(
            settings.rpc_http_url,
            settings.rpc_ws_url,
            settings.chain_id,
            marketplace_address=settings.marketplace_contract_address,
            retries=settings.rpc_retries,
        )
        self.publisher = EventPublisher(settings.chain_id)
        self.reconciler = StateReconciler(
            self.session_factory,
            self.chain,
            self.publisher,
            settings.chain_id,
            nft_contract_address=settings.nft_contract_address,
            attempts=settings.reconcile_attempts,
        )
        self.checkpoints = CheckpointStore(self.session_factory)
        self.coordinator = BackfillCoordinator(
            self.chain, self.reconciler, self.checkpoints, min_span=settings.log_split_min_span
        )
        self.live = LiveSubscriber(self.chain, self.reconciler, self.checkpoints, self.coordinator)
        self.metadata = MetadataFetcher(
            self.session_factory,
            self.chain,
            settings.chain_id,
            ipfs_gateway=settings.ipfs_gateway,
            timeout=settings.metadata_timeout,
        )
        self.importer = CollectionImporter(
            self.session_factory,
            self.chain,
            self.coordinator,
            self.metadata,
            settings.chain_id,
            floor_block=settings.import_floor_block,
            chunk_size=settings.import_chunk_size,
            on_finished=self._track_import,
        )
        self.jobs = ImportJobQueue(
            self.session_factory, self.importer, settings.chain_id, max_attempts=settings.import_max_attempts
        )

    async def _track_import(self, stream: Stream) -> None:
        if stream.stream_id not in self.live.streams:
            self.live.track(stream, backfill_complete=True)

    async def init_db(self) -> None:
        await init_models(self.engine)

    async def backfill_core(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> int:
        """Backfill the core stream, either from its checkpoint or over an explicit range"""
        stream = core_stream(self.settings)
        if from_block is None:
            return await self.coordinator.catch_up(stream, head=to_block)
        if to_block is None:
            to_block = await self.chain.block_number()
        return await self.coordinator.run(stream, from_block, to_block)

    async def _core_backfill(self, stream: Stream) -> None:
        await self.coordinator.catch_up(stream)
        self.live.mark_backfill_complete(stream.stream_id)

    async def _metadata_loop(self) -> None:
        while True:
            while await self.metadata.enrich_items():
                pass
            self.metadata.retry_deferred()
            await asyncio.sleep(self.METADATA_INTERVAL)

    async def run(self) -> int:
        """Run until the subscription is lost or a component fails. Returns the exit code."""
        if not await check_database_connection(self.session_factory):
            await self.close()
            return 1
        await self.init_db()

        stream = core_stream(self.settings)
        self.live.track(stream)
        for imported in await self.importer.finished_streams():
            self.live.track(imported, backfill_complete=True)
        await self.jobs.requeue_pending()

        logger.info(f"🚀 Starting indexer on chain {self.settings.chain_id}")
        tasks = [
            asyncio.create_task(self.chain.subscribe_new_heads(self.live.handle_head), name="subscription"),
            asyncio.create_task(self._core_backfill(stream), name="core-backfill"),
            asyncio.create_task(self.jobs.worker(), name="import-worker"),
            asyncio.create_task(self._metadata_loop(), name="metadata"),
        ]
        lost = asyncio.create_task(self.chain.connection_lost.wait(), name="connection-lost")

        exit_code = 1
        try:
            pending = set(tasks) | {lost}
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if lost in done:
                    logger.error(f"❌ Chain connection lost ({self.chain.connection_lost_reason}), exiting")
                    break
                failed = [t for t in done if t.exception() is not None]
                if failed:
                    for task in failed:
                        logger.error(f"❌ {task.get_name()} failed: {task.exception()!r}")
                    break
                # Core backfill finishing is the only expected completion
                done_names = {t.get_name() for t in done}
                if done_names - {"core-backfill"}:
                    logger.error(f"❌ {', '.join(sorted(done_names))} stopped unexpectedly")
                    break
        finally:
            for task in tasks + [lost]:
                task.cancel()
            await asyncio.gather(*tasks, lost, return_exceptions=True)
            await self.close()
        return exit_code

    async def close(self) -> None:
        await self.chain.close()
        await self.engine.dispose()
