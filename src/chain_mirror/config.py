"""
Global configuration for the chain mirror.

This module contains environment-specific settings and the settings file
model used by the command line.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import Field, model_validator

from chain_mirror.rpc.source import DEFAULT_STREAMS
from chain_mirror.sync import config as sync_config
from chain_mirror.sync.config import SyncConfig
from chain_mirror.types import FrozenModel

_SUPPORTED_ENVS: list[str] = ["prod", "test"]

CHAIN_MIRROR_ENV = os.environ.get("CHAIN_MIRROR_ENV", "prod").lower()
"""The environment flag ('prod' or 'test'). Defaults to 'prod'."""

if CHAIN_MIRROR_ENV not in _SUPPORTED_ENVS:
    raise ValueError(
        f"Invalid CHAIN_MIRROR_ENV environment variable: '{CHAIN_MIRROR_ENV}'. "
        f"Supported values: {_SUPPORTED_ENVS}"
    )

_ENV_RPC_URLS: dict[str, str] = {
    "prod": "https://free.rpc.fastnear.com",
    "test": "http://localhost:3030",
}

DEFAULT_RPC_URL = os.environ.get("CHAIN_MIRROR_RPC_URL", _ENV_RPC_URLS[CHAIN_MIRROR_ENV])
"""JSON-RPC endpoint used when none is configured. Test runs target a localnet node."""


class MirrorSettings(FrozenModel):
    """
    Settings of a mirror process.

    Keys may be written in snake_case or camelCase. Every sync tunable
    defaults to the value in ``chain_mirror.sync.config``.

    Example::

        rpc_url: https://free.rpc.fastnear.com
        streams: [blocks, transactions]
        poll_interval: 3
        retention_limit: 2000
        stream_retention:
          transactions: 500
        database: mirror.sqlite
        api_port: 5080
    """

    rpc_url: str = DEFAULT_RPC_URL
    """Remote node JSON-RPC endpoint."""

    streams: list[str] = Field(default_factory=lambda: list(DEFAULT_STREAMS))
    """Streams to mirror."""

    database: Path | None = None
    """SQLite file for snapshots. None keeps snapshots in memory only."""

    snapshot_capacity_bytes: int | None = Field(default=None, ge=0)
    """Upper bound on stored snapshot bytes."""

    api_host: str = "127.0.0.1"
    """Address the HTTP API binds to."""

    api_port: int | None = Field(default=None, ge=0, le=65535)
    """Port of the HTTP API. None disables it."""

    max_batch_size: int = sync_config.MAX_BATCH_SIZE
    max_concurrent_requests: int = sync_config.MAX_CONCURRENT_REQUESTS
    max_requests_per_pass: int = sync_config.MAX_REQUESTS_PER_PASS
    request_timeout: float = sync_config.REQUEST_TIMEOUT
    poll_interval: float = sync_config.POLL_INTERVAL
    backoff_initial: float = sync_config.BACKOFF_INITIAL
    backoff_multiplier: float = sync_config.BACKOFF_MULTIPLIER
    backoff_max: float = sync_config.BACKOFF_MAX
    retention_limit: int = sync_config.RETENTION_LIMIT
    stream_retention: dict[str, int] = Field(default_factory=dict)
    initial_sync_depth: int = sync_config.INITIAL_SYNC_DEPTH
    genesis_height: int = sync_config.GENESIS_HEIGHT
    shutdown_grace: float = sync_config.SHUTDOWN_GRACE

    @model_validator(mode="after")
    def _check_sync_config(self) -> MirrorSettings:
        """Fail at load time if the sync tunables are out of range."""
        if not self.streams:
            raise ValueError("at least one stream is required")
        unknown = sorted(set(self.streams) - set(DEFAULT_STREAMS))
        if unknown:
            raise ValueError(f"unknown streams {unknown}, supported: {list(DEFAULT_STREAMS)}")
        if len(set(self.streams)) != len(self.streams):
            raise ValueError(f"streams listed more than once: {self.streams}")
        self.to_sync_config()
        return self

    def to_sync_config(self) -> SyncConfig:
        """Build the sync engine configuration."""
        return SyncConfig(
            max_batch_size=self.max_batch_size,
            max_concurrent_requests=self.max_concurrent_requests,
            max_requests_per_pass=self.max_requests_per_pass,
            request_timeout=self.request_timeout,
            poll_interval=self.poll_interval,
            backoff_initial=self.backoff_initial,
            backoff_multiplier=self.backoff_multiplier,
            backoff_max=self.backoff_max,
            retention_limit=self.retention_limit,
            stream_retention=dict(self.stream_retention),
            initial_sync_depth=self.initial_sync_depth,
            genesis_height=self.genesis_height,
            shutdown_grace=self.shutdown_grace,
        )

    @classmethod
    def from_yaml_file(cls, path: Path | str) -> MirrorSettings:
        """
        Load settings from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            pydantic.ValidationError: If the data fails validation.
        """
        path = Path(path)
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml(cls, content: str) -> MirrorSettings:
        """
        Load settings from a YAML string.

        Useful for testing or programmatic config generation.
        """
        return cls.model_validate(yaml.safe_load(content) or {})
