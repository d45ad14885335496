"""
Backfill coordinator.

Walks a block interval in fixed-size chunks. Each chunk is fetched, decoded
and reconciled before the stream's checkpoint is advanced to the chunk end,
so a failure anywhere in a chunk leaves the checkpoint where it was.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from marketplace_indexer.checkpoints import CheckpointStore
from marketplace_indexer.decoder import decode_logs, short, to_hex
from marketplace_indexer.reconciler import StateReconciler

logger = logging.getLogger(__name__)

SPLIT_ERROR_MARKERS = [
    'too many results',
    'response size',
    'limit',
    'timeout',
    'gateway',
    'internal error',
    'server error',
]


def chunk_ranges(start: int, end: int, size: int) -> Iterator[Tuple[int, int]]:
    """Inclusive [from, to] pairs covering start..end exactly once, in order"""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    from_block = start
    while from_block <= end:
        to_block = min(from_block + size - 1, end)
        yield from_block, to_block
        from_block = to_block + 1


@dataclass
class Stream:
    """A set of contracts and topics sharing one checkpoint"""
    stream_id: str
    addresses: List[str]
    topics: List[str]
    start_block: int
    chunk_size: int
    label: str = ""
    topics_by_address: Dict[str, List[str]] = field(default_factory=dict)

    def topics_for(self, address: str) -> List[str]:
        return self.topics_by_address.get(address.lower(), self.topics)

    def matches(self, raw_log: Any) -> bool:
        """Whether a log from a combined query belongs to this stream"""
        address = str(raw_log['address']).lower()
        if address not in {a.lower() for a in self.addresses}:
            return False
        topics = raw_log.get('topics') or []
        if not topics:
            return False
        return to_hex(topics[0]) in self.topics_for(address)


ChunkCallback = Callable[[Stream, int, int], Awaitable[None]]


class BackfillCoordinator:
    """Chunked historical sync for one or more streams"""

    PROGRESS_EVERY = 5000

    def __init__(
        self,
        chain,
        reconciler: StateReconciler,
        checkpoints: CheckpointStore,
        min_span: int = 500,
    ):
        self.chain = chain
        self.reconciler = reconciler
        self.checkpoints = checkpoints
        self.min_span = min_span
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, stream_id: str) -> asyncio.Lock:
        if stream_id not in self._locks:
            self._locks[stream_id] = asyncio.Lock()
        return self._locks[stream_id]

    async def get_logs_with_split(self, addresses: List[str], topics: List[str], from_block: int, to_block: int) -> List[Any]:
        """Fetch logs using eth_getLogs with adaptive range splitting.

        - Splits the block range on provider size/limit errors
        - Re-raises anything else, or once the span is already small
        """
        try:
            return await self.chain.get_logs(addresses, topics, from_block, to_block)
        except Exception as e:
            span = to_block - from_block
            msg = str(e).lower()
            should_split = span > self.min_span and any(x in msg for x in SPLIT_ERROR_MARKERS)
            if should_split:
                mid = from_block + span // 2
                logger.debug(f"[{to_block}] Splitting log query {from_block}-{to_block} at {mid}: {e}")
                left = await self.get_logs_with_split(addresses, topics, from_block, mid)
                right = await self.get_logs_with_split(addresses, topics, mid + 1, to_block)
                return left + right
            raise

    async def fetch_stream_logs(self, stream: Stream, from_block: int, to_block: int) -> List[Any]:
        if not stream.topics_by_address:
            return await self.get_logs_with_split(stream.addresses, stream.topics, from_block, to_block)

        # Contracts with different topic sets are queried separately so filters stay exact
        logs: List[Any] = []
        for address in stream.addresses:
            logs.extend(await self.get_logs_with_split([address], stream.topics_for(address), from_block, to_block))
        return logs

    async def process_range(self, stream: Stream, from_block: int, to_block: int) -> int:
        """Fetch, decode and reconcile one range. Does not touch the checkpoint."""
        raw_logs = await self.fetch_stream_logs(stream, from_block, to_block)
        events = decode_logs(raw_logs)
        applied = await self.reconciler.apply_all(events)
        if events:
            logger.info(
                f"[{to_block}] {stream.label or stream.stream_id}: {len(events)} events in blocks "
                f"{from_block}-{to_block}, {applied} applied"
            )
        return applied

    async def run(
        self,
        stream: Stream,
        from_block: int,
        to_block: int,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> int:
        """Backfill [from_block, to_block], advancing the checkpoint after every chunk"""
        if from_block > to_block:
            return 0

        total_blocks = to_block - from_block + 1
        applied = 0
        async with self._lock(stream.stream_id):
            logger.info(
                f"[{to_block}, -{total_blocks}] Processing {total_blocks:,} blocks for {stream.label or stream.stream_id}"
            )
            for chunk_from, chunk_to in chunk_ranges(from_block, to_block, stream.chunk_size):
                applied += await self.process_range(stream, chunk_from, chunk_to)
                await self.checkpoints.advance(stream.stream_id, chunk_to)
                if on_chunk is not None:
                    await on_chunk(stream, chunk_from, chunk_to)

                blocks_processed = chunk_to - from_block + 1
                if blocks_processed % self.PROGRESS_EVERY < stream.chunk_size:
                    remaining_blocks = to_block - chunk_to
                    percent_complete = blocks_processed / total_blocks * 100
                    logger.info(
                        f"[{chunk_to}, -{remaining_blocks}] {stream.label or stream.stream_id} progress: "
                        f"{blocks_processed:,}/{total_blocks:,} blocks ({percent_complete:.1f}%)"
                    )
        return applied

    async def catch_up(
        self,
        stream: Stream,
        head: Optional[int] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> int:
        """Backfill from the stream's checkpoint (or start block) to `head` (default: current head)"""
        if head is None:
            head = await self.chain.block_number()

        last = await self.checkpoints.get(stream.stream_id)
        from_block = stream.start_block if last is None else max(last + 1, stream.start_block)
        if from_block > head:
            logger.debug(f"{stream.label or stream.stream_id} up to date at block {head}")
            return 0

        logger.info(
            f"[{head}, -{head - from_block + 1}] {stream.label or stream.stream_id} "
            f"({', '.join(short(a) for a in stream.addresses)}): syncing from {from_block}"
        )
        return await self.run(stream, from_block, head, on_chunk=on_chunk)
