"""
Shared pytest fixtures for all chain mirror tests.

Provides the sync components wired together the way the service wires them.
"""

from __future__ import annotations

import pytest

from chain_mirror.sync.cache_store import CacheStore
from chain_mirror.sync.config import SyncConfig
from chain_mirror.sync.merge import MergeEngine
from chain_mirror.sync.orchestrator import FetchOrchestrator
from chain_mirror.sync.range_tracker import RangeTracker
from tests.chain_mirror.helpers import FAST_CONFIG, FakeDataSource


@pytest.fixture
def config() -> SyncConfig:
    """Sync settings with tiny delays."""
    return FAST_CONFIG


@pytest.fixture
def cache() -> CacheStore:
    """An empty cache store."""
    return CacheStore()


@pytest.fixture
def tracker(cache: CacheStore) -> RangeTracker:
    """A range tracker over the cache fixture."""
    return RangeTracker(cache)


@pytest.fixture
def engine(cache: CacheStore, tracker: RangeTracker, config: SyncConfig) -> MergeEngine:
    """A merge engine over the cache and tracker fixtures."""
    return MergeEngine(cache, tracker, config)


@pytest.fixture
def source() -> FakeDataSource:
    """A remote ledger with no data yet."""
    return FakeDataSource()


@pytest.fixture
def orchestrator(
    source: FakeDataSource, engine: MergeEngine, config: SyncConfig
) -> FetchOrchestrator:
    """An orchestrator fetching from the fake source."""
    return FetchOrchestrator(source, engine, config)
