"""
Per-stream checkpoints.

A checkpoint only ever moves forward: `advance` is a conditional write that
succeeds only when the new block is greater than the stored one.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_indexer.database import run_in_transaction
from marketplace_indexer.models import Checkpoint, utcnow

logger = logging.getLogger(__name__)

CORE_STREAM = "core"


def import_stream_id(chain_id: int, contract_address: str) -> str:
    return f"import:{chain_id}:{contract_address.lower()}"


class CheckpointStore:
    """Reads and monotonically advances checkpoint rows"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, stream_id: str) -> Optional[int]:
        """Last processed block for a stream, or None if it never ran"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Checkpoint.last_block_processed).where(Checkpoint.stream_id == stream_id)
            )
            return result.scalar_one_or_none()

    async def advance(self, stream_id: str, block_number: int) -> bool:
        """Move the checkpoint to `block_number` if that is ahead of it. Returns True if it moved."""
        moved = await run_in_transaction(
            self.session_factory,
            lambda session: self._advance(session, stream_id, block_number),
            label=f"checkpoint {stream_id}",
        )
        if moved:
            logger.debug(f"[{block_number}] Checkpoint {stream_id} advanced")
        return moved

    async def _advance(self, session: AsyncSession, stream_id: str, block_number: int) -> bool:
        result = await session.execute(
            update(Checkpoint)
            .where(Checkpoint.stream_id == stream_id)
            .where(Checkpoint.last_block_processed < block_number)
            .values(last_block_processed=block_number, updated_at=utcnow())
        )
        if result.rowcount:
            return True

        exists = await session.execute(select(Checkpoint.stream_id).where(Checkpoint.stream_id == stream_id))
        if exists.scalar_one_or_none() is not None:
            return False

        # A concurrent insert surfaces as IntegrityError and the retry takes the update path
        session.add(Checkpoint(stream_id=stream_id, last_block_processed=block_number))
        await session.flush()
        return True
