"""
Live subscriber.

Reconciles each new head through the same path as backfill. A stream only
takes part in live delivery once its backfill has signalled completion, so
live events can never be applied ahead of the history they depend on, and a
live head never pushes a checkpoint past unreconciled blocks.
"""

import asyncio
import logging
from typing import Dict, List

from marketplace_indexer.backfill import BackfillCoordinator, Stream
from marketplace_indexer.checkpoints import CheckpointStore
from marketplace_indexer.decoder import decode_logs
from marketplace_indexer.reconciler import StateReconciler

logger = logging.getLogger(__name__)


class LiveSubscriber:
    """Handles newHeads notifications for every tracked stream"""

    def __init__(
        self,
        chain,
        reconciler: StateReconciler,
        checkpoints: CheckpointStore,
        coordinator: BackfillCoordinator,
    ):
        self.chain = chain
        self.reconciler = reconciler
        self.checkpoints = checkpoints
        self.coordinator = coordinator
        self.streams: Dict[str, Stream] = {}
        self._backfill_done: Dict[str, asyncio.Event] = {}

    def track(self, stream: Stream, backfill_complete: bool = False) -> None:
        self.streams[stream.stream_id] = stream
        self._backfill_done.setdefault(stream.stream_id, asyncio.Event())
        if backfill_complete:
            self.mark_backfill_complete(stream.stream_id)
        logger.info(f"Tracking {stream.label or stream.stream_id} live ({len(stream.addresses)} contracts)")

    def mark_backfill_complete(self, stream_id: str) -> None:
        self._backfill_done.setdefault(stream_id, asyncio.Event()).set()
        logger.info(f"✅ Backfill complete for {stream_id}; live heads now apply to it")

    def is_caught_up(self, stream_id: str) -> bool:
        done = self._backfill_done.get(stream_id)
        return done is not None and done.is_set()

    def _caught_up_streams(self) -> List[Stream]:
        return [s for s in self.streams.values() if self.is_caught_up(s.stream_id)]

    @staticmethod
    def _addresses(streams: List[Stream]) -> List[str]:
        seen = {}
        for stream in streams:
            for address in stream.addresses:
                seen.setdefault(address.lower(), address)
        return list(seen.values())

    @staticmethod
    def _topics(streams: List[Stream]) -> List[str]:
        topics = []
        for stream in streams:
            for topic in stream.topics:
                if topic not in topics:
                    topics.append(topic)
        return topics

    async def _fill_gaps(self, streams: List[Stream], block_number: int) -> None:
        """Process blocks a caught-up stream missed between its checkpoint and this head"""
        for stream in streams:
            last = await self.checkpoints.get(stream.stream_id)
            if last is not None and last < block_number - 1:
                logger.info(f"[{block_number}] Filling gap {last + 1}-{block_number - 1} for {stream.stream_id}")
                await self.coordinator.run(stream, last + 1, block_number - 1)

    async def handle_head(self, block_number: int) -> int:
        """Reconcile one new block for every caught-up stream.

        Streams still backfilling are skipped; their heads are replayed by the
        gap fill once the backfill is marked complete.
        """
        streams = self._caught_up_streams()
        if not streams:
            return 0

        await self._fill_gaps(streams, block_number)

        raw_logs = await self.chain.get_logs(self._addresses(streams), self._topics(streams), block_number, block_number)
        matched = [log for log in raw_logs if any(s.matches(log) for s in streams)]
        events = decode_logs(matched)
        applied = await self.reconciler.apply_all(events)
        if events:
            logger.info(f"[{block_number}] ⚡ Live: {len(events)} events, {applied} applied")

        for stream in streams:
            await self.checkpoints.advance(stream.stream_id, block_number)
        return applied
