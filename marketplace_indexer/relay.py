#!/usr/bin/env python3
"""
Relay service that publishes outbox events to Redis Streams.
Runs as a separate process for fault isolation.
"""
import json
import time
import asyncio
import logging
from typing import Dict, List, Optional

import redis
import redis.asyncio as aioredis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from marketplace_indexer.models import OutboxEvent, utcnow

logger = logging.getLogger(__name__)

STREAM_MAXLEN = 100000


class OutboxRelay:
    """Relay events from the outbox table to Redis Streams"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis_client: aioredis.Redis,
        stream_key: str = 'marketplace:events',
        dlq_key: Optional[str] = None,
        batch_size: int = 100,
        poll_interval_ms: int = 300,
        retry_limit: int = 5,
    ):
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.stream_key = stream_key
        self.dlq_key = dlq_key or f"{stream_key}:dlq"
        self.batch_size = batch_size
        self.poll_interval_ms = poll_interval_ms
        self.retry_limit = retry_limit
        logger.info(f"✅ Relay initialized: stream={stream_key}, batch={batch_size}")

    @classmethod
    def from_url(cls, session_factory: async_sessionmaker, redis_url: str, **kwargs) -> "OutboxRelay":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=5,
        )
        return cls(session_factory, client, **kwargs)

    async def fetch_unpublished_events(self) -> List[Dict]:
        """Fetch batch of unpublished events from outbox"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.published_at.is_(None))
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            )
            return [
                {
                    'id': row.id,
                    'type': row.type,
                    'chain_id': row.chain_id,
                    'block_number': row.block_number,
                    'tx_hash': row.tx_hash,
                    'log_index': row.log_index,
                    'contract_address': row.contract_address,
                    'listing_id': row.listing_id,
                    'timestamp': row.timestamp,
                    'payload_json': row.payload_json,
                    'uniq': row.uniq,
                    'ver': row.ver,
                    'retries': row.retries,
                    'last_error': row.last_error,
                }
                for row in result.scalars()
            ]

    async def publish_to_stream(self, event: Dict) -> bool:
        """Publish single event to Redis Stream"""
        try:
            txh = event.get('tx_hash')
            if isinstance(txh, str) and not txh.startswith('0x'):
                txh = '0x' + txh
            # XADD field values must be strings
            fields = {
                'type': event['type'],
                'chain_id': str(event['chain_id']),
                'block_number': str(event['block_number']),
                'tx_hash': txh if txh is not None else '',
                'log_index': str(event['log_index']),
                'contract_address': event['contract_address'] or '',
                'timestamp': str(event['timestamp']),
                'uniq': event['uniq'],
                'ver': str(event['ver']),
                'payload_json': event['payload_json'],
            }
            if event.get('listing_id') is not None:
                fields['listing_id'] = str(event['listing_id'])

            message_id = await self.redis_client.xadd(
                self.stream_key,
                fields,
                maxlen=STREAM_MAXLEN,
                approximate=True,
            )
            logger.debug(f"Published event {event['uniq']} as {message_id}")
            return True

        except (redis.RedisError, OSError) as e:
            logger.error(f"Failed to publish event {event['id']}: {e}")
            return False

    async def mark_published(self, event_id: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEvent).where(OutboxEvent.id == event_id).values(published_at=utcnow())
                )

    async def increment_retry(self, event_id: int, error: str) -> None:
        """Increment retry count and record error"""
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event_id)
                    .values(retries=OutboxEvent.retries + 1, last_error=error[:500])
                )

    async def move_to_dlq(self, event: Dict) -> bool:
        """Move a failed event to the dead letter stream"""
        try:
            fields = {
                'original_event': json.dumps(event, default=str),
                'failure_time': str(int(time.time())),
                'retries': str(event['retries']),
                'last_error': event.get('last_error') or 'Unknown',
            }
            await self.redis_client.xadd(self.dlq_key, fields)
        except (redis.RedisError, OSError) as e:
            logger.error(f"Failed to move event {event['id']} to DLQ: {e}")
            return False

        logger.warning(f"Moved event {event['id']} to DLQ after {event['retries']} retries")
        # Mark as published so it stops blocking the queue
        await self.mark_published(event['id'])
        return True

    async def process_batch(self) -> int:
        """Process a batch of events"""
        events = await self.fetch_unpublished_events()
        if not events:
            return 0

        processed = 0
        for event in events:
            if event['retries'] >= self.retry_limit:
                if await self.move_to_dlq(event):
                    processed += 1
                continue

            if await self.publish_to_stream(event):
                await self.mark_published(event['id'])
                processed += 1
            else:
                await self.increment_retry(event['id'], "Redis publish failed")

        if processed > 0:
            logger.info(f"📤 Relayed {processed}/{len(events)} events to Redis")
        return processed

    async def run(self) -> None:
        """Main relay loop"""
        logger.info("🚀 Starting Outbox Relay Service")
        logger.info(f"📊 Config: batch={self.batch_size}, poll={self.poll_interval_ms}ms, retry_limit={self.retry_limit}")

        consecutive_empty = 0
        while True:
            processed = await self.process_batch()
            if processed == 0:
                consecutive_empty += 1
                # Back off when queue is empty
                sleep_ms = min(self.poll_interval_ms * consecutive_empty, 5000)
            else:
                consecutive_empty = 0
                sleep_ms = self.poll_interval_ms
            await asyncio.sleep(sleep_ms / 1000.0)

    async def close(self) -> None:
        await self.redis_client.aclose()
