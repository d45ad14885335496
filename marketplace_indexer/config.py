#!/usr/bin/env python3
"""
Configuration management for the marketplace indexer.
Settings come from the environment (and .env), optionally overlaid by a YAML file.
"""

import os
import logging
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

from marketplace_indexer.errors import ConfigError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Settings(BaseSettings):
    """Indexer settings with environment-based configuration"""

    # Database settings
    database_url: str = "postgresql://postgres@localhost:5432/marketplace"
    sql_debug: bool = False

    # Chain connection
    rpc_http_url: str = "http://localhost:8545"
    rpc_ws_url: str = "ws://localhost:8546"
    chain_id: int = 1
    rpc_retries: int = 3

    # Core contracts
    nft_contract_address: Optional[str] = None
    marketplace_contract_address: Optional[str] = None
    royalty_distributor_contract_address: Optional[str] = None
    start_block: int = 0

    # Backfill
    backfill_chunk_size: int = 1000
    import_chunk_size: int = 3000
    log_split_min_span: int = 500
    reconcile_attempts: int = 5

    # Collection import
    import_floor_block: int = 0
    import_max_attempts: int = 3

    # Token metadata
    ipfs_gateway: str = "https://ipfs.io/ipfs"
    metadata_timeout: float = 5.0

    # Outbox relay
    redis_url: str = "redis://localhost:6379"
    outbox_stream_key: str = "marketplace:events"
    relay_batch_size: int = 100
    relay_poll_interval_ms: int = 300
    relay_retry_limit: int = 5

    log_level: str = "INFO"

    @field_validator('nft_contract_address', 'marketplace_contract_address',
                     'royalty_distributor_contract_address', mode='before')
    @classmethod
    def parse_address(cls, v):
        """Handle empty strings and YAML integer addresses"""
        if v == '' or v is None:
            return None
        if isinstance(v, int):
            return f"0x{v:040x}"
        return str(v).strip()

    @field_validator('log_level', mode='before')
    @classmethod
    def parse_log_level(cls, v):
        return str(v or "INFO").upper()

    def get_async_database_url(self) -> str:
        """Get the database URL with an async driver"""
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if self.database_url.startswith("sqlite:///"):
            return self.database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return self.database_url

    def core_contracts(self) -> Dict[str, str]:
        """Configured core contracts keyed by role"""
        contracts = {
            'nft': self.nft_contract_address,
            'marketplace': self.marketplace_contract_address,
            'royalty_distributor': self.royalty_distributor_contract_address,
        }
        return {role: address for role, address in contracts.items() if address}

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}


def _load_yaml(config_path: str) -> Dict[str, Any]:
    """Load a YAML config file and expand environment variables in it"""
    try:
        with open(config_path, 'r') as f:
            config_content = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

    config_content = os.path.expandvars(config_content)
    data = yaml.safe_load(config_content) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    # Nested sections are flattened so `indexer: {chunk_size: ..}` style files still work
    flat = {}
    for key, value in data.items():
        if isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Build settings from the environment, overlaid by an optional YAML file"""
    load_dotenv()
    if not config_path:
        return Settings()

    overrides = _load_yaml(config_path)
    logger.info(f"Loaded configuration from {config_path} ({len(overrides)} keys)")
    return Settings(**overrides)
