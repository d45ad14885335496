"""
Collection importer.

Brings an arbitrary ERC-721 / ERC-1155 contract under indexing: classifies
it, finds its deployment block, backfills its transfer history through the
shared backfill coordinator and finally hands it to live tracking.
Import requests are queued as ImportJob rows and worked off by an
in-process asyncio queue.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_indexer.backfill import BackfillCoordinator, Stream
from marketplace_indexer.chain import ERC1155_INTERFACE_ID, ERC721_INTERFACE_ID
from marketplace_indexer.checkpoints import import_stream_id
from marketplace_indexer.config import ZERO_ADDRESS
from marketplace_indexer.database import retry_forever, run_in_transaction
from marketplace_indexer.decoder import ERC1155_TRANSFER_TOPICS, ERC721_TRANSFER_TOPICS, checksum, short
from marketplace_indexer.errors import ImportJobNotFound, NotAContractError, UnsupportedContractError
from marketplace_indexer.metadata import MetadataFetcher
from marketplace_indexer.models import ImportedContract, ImportJob, ImportJobStatus, TokenStandard, utcnow

logger = logging.getLogger(__name__)

FinishedCallback = Callable[[Stream], Awaitable[None]]

# Collection-level import states reported alongside the job status
NOT_IMPORTED = "NOT_IMPORTED"
IMPORTING = "IMPORTING"
FINISHED = "FINISHED"


def import_stream(contract: ImportedContract, chunk_size: int) -> Stream:
    """The backfill/live stream that owns an imported contract's checkpoint"""
    topics = ERC1155_TRANSFER_TOPICS if contract.token_standard == TokenStandard.ERC1155.value else ERC721_TRANSFER_TOPICS
    return Stream(
        stream_id=import_stream_id(contract.chain_id, contract.contract_address),
        addresses=[contract.contract_address],
        topics=list(topics),
        start_block=contract.deployed_at_block,
        chunk_size=chunk_size,
        label=contract.name or short(contract.contract_address),
    )


class CollectionImporter:
    """Imports one external collection end to end"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        chain,
        coordinator: BackfillCoordinator,
        metadata: Optional[MetadataFetcher],
        chain_id: int,
        floor_block: int = 0,
        chunk_size: int = 3000,
        on_finished: Optional[FinishedCallback] = None,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.coordinator = coordinator
        self.metadata = metadata
        self.chain_id = chain_id
        self.floor_block = floor_block
        self.chunk_size = chunk_size
        self.on_finished = on_finished

    async def classify(self, address: str) -> TokenStandard:
        supports_1155 = await self.chain.supports_interface(address, ERC1155_INTERFACE_ID)
        if supports_1155:
            return TokenStandard.ERC1155
        if await self.chain.supports_interface(address, ERC721_INTERFACE_ID):
            return TokenStandard.ERC721
        raise UnsupportedContractError(f"{address} implements neither ERC-721 nor ERC-1155")

    async def find_deployment_block(self, address: str, low: int, high: int) -> int:
        """First block in [low, high] at which `address` has bytecode"""
        if not await self.chain.get_code(address, high):
            raise NotAContractError(f"No contract code at {address} (block {high})")

        while low < high:
            mid = (low + high) // 2
            if await self.chain.get_code(address, mid):
                high = mid
            else:
                low = mid + 1
        return low

    async def resolve_creator(self, address: str, deployed_at_block: int) -> str:
        owner = await self.chain.get_owner(address)
        if owner:
            return owner
        deployer = await self.chain.find_deployer(address, deployed_at_block)
        if deployer:
            return deployer
        logger.warning(f"[{deployed_at_block}] Could not resolve creator of {short(address)}")
        return ZERO_ADDRESS

    async def resolve_name(self, address: str) -> str:
        name = await self.chain.get_contract_name(address)
        return name or f"{address}-{self.chain_id}"

    async def _load_contract(self, address: str) -> Optional[ImportedContract]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportedContract).where(
                    ImportedContract.contract_address == address,
                    ImportedContract.chain_id == self.chain_id,
                )
            )
            return result.scalar_one_or_none()

    async def register(self, address: str) -> ImportedContract:
        """Classify and describe the contract, then create its ImportedContract row (once)"""
        existing = await self._load_contract(address)
        if existing is not None:
            return existing

        standard = await self.classify(address)
        head = await self.chain.block_number()
        deployed_at_block = await self.find_deployment_block(address, self.floor_block, head)
        creator = await self.resolve_creator(address, deployed_at_block)
        name = await self.resolve_name(address)

        async def work(session: AsyncSession) -> ImportedContract:
            contract = ImportedContract(
                contract_address=address,
                chain_id=self.chain_id,
                token_standard=standard.value,
                deployed_at_block=deployed_at_block,
                last_indexed_block=None,
                import_finished=False,
                name=name,
                creator_address=creator,
            )
            session.add(contract)
            await session.flush()
            return contract

        try:
            contract = await run_in_transaction(self.session_factory, work, attempts=1, label=f"register {address}")
        except IntegrityError:
            # Another writer created the row first; wait until it is readable
            logger.debug(f"ImportedContract {short(address)} created concurrently, reading it back")
            contract = await retry_forever(lambda: self._load_contract(address), f"ImportedContract {short(address)}")

        logger.info(
            f"[{contract.deployed_at_block}] 📦 Registered {contract.token_standard} collection {contract.name} "
            f"({short(address)}), creator {short(contract.creator_address)}"
        )
        return contract

    async def _mirror_progress(self, stream: Stream, chunk_from: int, chunk_to: int) -> None:
        address = stream.addresses[0]

        async def work(session: AsyncSession) -> None:
            await session.execute(
                update(ImportedContract)
                .where(
                    ImportedContract.contract_address == address,
                    ImportedContract.chain_id == self.chain_id,
                )
                .values(last_indexed_block=chunk_to)
            )

        await run_in_transaction(self.session_factory, work, label=f"import progress {address}")

    async def _mark_finished(self, address: str) -> bool:
        async def work(session: AsyncSession) -> bool:
            result = await session.execute(
                update(ImportedContract)
                .where(
                    ImportedContract.contract_address == address,
                    ImportedContract.chain_id == self.chain_id,
                    ImportedContract.import_finished.is_(False),
                )
                .values(import_finished=True)
            )
            return result.rowcount > 0

        return await run_in_transaction(self.session_factory, work, label=f"import finished {address}")

    async def import_contract(self, address: str) -> ImportedContract:
        """Run a full import. Safe to call again after a failure; it resumes from the checkpoint."""
        address = checksum(address)
        contract = await self.register(address)
        stream = import_stream(contract, self.chunk_size)

        if not contract.import_finished:
            await self.coordinator.catch_up(stream, on_chunk=self._mirror_progress)
            if await self._mark_finished(address):
                logger.info(f"✅ Import of {contract.name} ({short(address)}) finished")

            if self.metadata is not None:
                while await self.metadata.enrich_items(contract_address=address):
                    pass

        if self.on_finished is not None:
            await self.on_finished(stream)
        return await self._load_contract(address)

    async def import_state(self, address: str) -> str:
        contract = await self._load_contract(checksum(address))
        if contract is None:
            return NOT_IMPORTED
        return FINISHED if contract.import_finished else IMPORTING

    async def finished_streams(self):
        """Streams of every completed import, for live tracking at startup"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportedContract).where(
                    ImportedContract.chain_id == self.chain_id,
                    ImportedContract.import_finished.is_(True),
                )
            )
            return [import_stream(contract, self.chunk_size) for contract in result.scalars()]


@dataclass
class ImportStatus:
    job_id: int
    contract_address: str
    chain_id: int
    job_status: str
    import_state: str
    attempts: int
    error: Optional[str] = None


class ImportJobQueue:
    """ImportJob rows worked off by an asyncio.Queue"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        importer: CollectionImporter,
        chain_id: int,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.importer = importer
        self.chain_id = chain_id
        self.max_attempts = max_attempts
        self.queue: asyncio.Queue = asyncio.Queue()

    async def _get_job(self, session: AsyncSession, address: str, chain_id: int) -> Optional[ImportJob]:
        result = await session.execute(
            select(ImportJob).where(ImportJob.contract_address == address, ImportJob.chain_id == chain_id)
        )
        return result.scalar_one_or_none()

    async def submit_import(self, address: str, chain_id: Optional[int] = None) -> int:
        """Queue an import for (address, chain_id), returning the job id. Idempotent."""
        address = checksum(address)
        chain_id = self.chain_id if chain_id is None else chain_id
        if chain_id != self.chain_id:
            raise ValueError(f"This indexer serves chain {self.chain_id}, not {chain_id}")

        async def work(session: AsyncSession):
            job = await self._get_job(session, address, chain_id)
            if job is None:
                job = ImportJob(contract_address=address, chain_id=chain_id, status=ImportJobStatus.QUEUED.value)
                session.add(job)
                await session.flush()
                return job.id, True
            if job.status == ImportJobStatus.FAILED.value:
                job.status = ImportJobStatus.QUEUED.value
                job.attempts = 0
                job.error = None
                job.updated_at = utcnow()
                return job.id, True
            return job.id, False

        job_id, enqueue = await run_in_transaction(self.session_factory, work, label=f"submit import {address}")
        if enqueue:
            logger.info(f"📥 Queued import job {job_id} for {short(address)}")
            await self.queue.put(job_id)
        return job_id

    async def get_import_status(self, job_id: int) -> ImportStatus:
        async with self.session_factory() as session:
            job = await session.get(ImportJob, job_id)
        if job is None:
            raise ImportJobNotFound(f"Import job {job_id} does not exist")
        return ImportStatus(
            job_id=job.id,
            contract_address=job.contract_address,
            chain_id=job.chain_id,
            job_status=job.status,
            import_state=await self.importer.import_state(job.contract_address),
            attempts=job.attempts,
            error=job.error,
        )

    async def _set_status(self, job_id: int, status: ImportJobStatus, error: Optional[str] = None, attempt: bool = False) -> None:
        async def work(session: AsyncSession) -> None:
            job = await session.get(ImportJob, job_id)
            job.status = status.value
            job.error = error
            job.updated_at = utcnow()
            if attempt:
                job.attempts = job.attempts + 1

        await run_in_transaction(self.session_factory, work, label=f"import job {job_id}")

    async def run_job(self, job_id: int) -> ImportJobStatus:
        """Attempt a job until it finishes, is rejected, or runs out of attempts"""
        async with self.session_factory() as session:
            job = await session.get(ImportJob, job_id)
        if job is None:
            raise ImportJobNotFound(f"Import job {job_id} does not exist")
        if job.status in (ImportJobStatus.FINISHED.value, ImportJobStatus.REJECTED.value):
            return ImportJobStatus(job.status)

        attempts = job.attempts
        while attempts < self.max_attempts:
            attempts += 1
            await self._set_status(job_id, ImportJobStatus.IMPORTING, attempt=True)
            try:
                await self.importer.import_contract(job.contract_address)
            except (UnsupportedContractError, NotAContractError) as e:
                logger.warning(f"🚫 Import job {job_id} rejected: {e}")
                await self._set_status(job_id, ImportJobStatus.REJECTED, error=str(e))
                return ImportJobStatus.REJECTED
            except Exception as e:
                logger.error(f"❌ Import job {job_id} attempt {attempts}/{self.max_attempts} failed: {e}")
                await self._set_status(job_id, ImportJobStatus.QUEUED, error=str(e))
                continue

            await self._set_status(job_id, ImportJobStatus.FINISHED)
            return ImportJobStatus.FINISHED

        await self._set_status(job_id, ImportJobStatus.FAILED, error=f"gave up after {attempts} attempts")
        return ImportJobStatus.FAILED

    async def requeue_pending(self) -> int:
        """Put jobs interrupted by a restart back on the queue"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportJob.id).where(
                    ImportJob.chain_id == self.chain_id,
                    ImportJob.status.in_([ImportJobStatus.QUEUED.value, ImportJobStatus.IMPORTING.value]),
                ).order_by(ImportJob.id)
            )
            job_ids = list(result.scalars())
        for job_id in job_ids:
            await self.queue.put(job_id)
        if job_ids:
            logger.info(f"Re-queued {len(job_ids)} pending import jobs")
        return len(job_ids)

    async def worker(self) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                await self.run_job(job_id)
            finally:
                self.queue.task_done()
