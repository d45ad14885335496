#!/usr/bin/env python3
"""
Command line entry point for the marketplace indexer.
"""

import sys
import asyncio
import logging
import argparse
from typing import Optional

from marketplace_indexer.config import Settings, load_settings
from marketplace_indexer.database import create_engine, create_session_factory, init_models
from marketplace_indexer.errors import IndexerError
from marketplace_indexer.relay import OutboxRelay
from marketplace_indexer.service import IndexerService

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # web3 and websockets are noisy at INFO
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


async def _init_db(settings: Settings) -> int:
    engine = create_engine(settings.get_async_database_url(), echo=settings.sql_debug)
    try:
        await init_models(engine)
    finally:
        await engine.dispose()
    return 0


async def _run(settings: Settings) -> int:
    service = IndexerService(settings)
    return await service.run()


async def _backfill(settings: Settings, from_block: Optional[int], to_block: Optional[int]) -> int:
    service = IndexerService(settings)
    try:
        await service.init_db()
        applied = await service.backfill_core(from_block, to_block)
    finally:
        await service.close()
    logger.info(f"✅ Backfill done: {applied} events applied")
    return 0


async def _import(settings: Settings, address: str) -> int:
    service = IndexerService(settings)
    try:
        await service.init_db()
        job_id = await service.jobs.submit_import(address)
        await service.jobs.run_job(job_id)
        status = await service.jobs.get_import_status(job_id)
    finally:
        await service.close()
    print(f"job {status.job_id}: {status.job_status} ({status.import_state})")
    if status.error:
        print(f"error: {status.error}")
    return 0 if status.job_status == "FINISHED" else 1


async def _import_status(settings: Settings, job_id: int) -> int:
    service = IndexerService(settings)
    try:
        status = await service.jobs.get_import_status(job_id)
    finally:
        await service.close()
    print(f"job {status.job_id}: {status.contract_address} on chain {status.chain_id}")
    print(f"  status:   {status.job_status}")
    print(f"  import:   {status.import_state}")
    print(f"  attempts: {status.attempts}")
    if status.error:
        print(f"  error:    {status.error}")
    return 0


async def _relay(settings: Settings) -> int:
    engine = create_engine(settings.get_async_database_url(), echo=settings.sql_debug)
    relay = OutboxRelay.from_url(
        create_session_factory(engine),
        settings.redis_url,
        stream_key=settings.outbox_stream_key,
        batch_size=settings.relay_batch_size,
        poll_interval_ms=settings.relay_poll_interval_ms,
        retry_limit=settings.relay_retry_limit,
    )
    try:
        await relay.run()
    finally:
        await relay.close()
        await engine.dispose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='NFT marketplace chain-to-database indexer')
    parser.add_argument('--config', '-c',
                        help='Path to a YAML config file (environment and .env are always read)',
                        default=None)
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init-db', help='Create database tables')
    subparsers.add_parser('run', help='Backfill the core contracts, then follow new blocks')

    backfill = subparsers.add_parser('backfill', help='Backfill the core contracts and exit')
    backfill.add_argument('--from-block', type=int, dest='from_block', default=None,
                          help='First block (default: resume from checkpoint)')
    backfill.add_argument('--to-block', type=int, dest='to_block', default=None,
                          help='Last block (default: chain head)')

    import_cmd = subparsers.add_parser('import', help='Import an external ERC-721/ERC-1155 collection')
    import_cmd.add_argument('address')

    status = subparsers.add_parser('import-status', help='Show the state of an import job')
    status.add_argument('job_id', type=int)

    subparsers.add_parser('relay', help='Relay outbox events to Redis Streams')
    return parser


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (IndexerError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    configure_logging(settings.log_level)

    commands = {
        'init-db': lambda: _init_db(settings),
        'run': lambda: _run(settings),
        'backfill': lambda: _backfill(settings, args.from_block, args.to_block),
        'import': lambda: _import(settings, args.address),
        'import-status': lambda: _import_status(settings, args.job_id),
        'relay': lambda: _relay(settings),
    }

    try:
        exit_code = asyncio.run(commands[args.command]())
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        exit_code = 0
    except IndexerError as e:
        logger.error(f"{e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
