"""Test helpers for chain mirror unit tests."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import TypeVar

from chain_mirror.sync.config import SyncConfig

from .builders import make_entities, make_entity, make_payload, make_transactions
from .mocks import FakeDataSource

FAST_CONFIG = SyncConfig(
    request_timeout=1.0,
    poll_interval=0.01,
    backoff_initial=0.01,
    backoff_multiplier=2.0,
    backoff_max=0.05,
    shutdown_grace=0.5,
)
"""Sync settings with tiny delays so loop tests finish quickly."""


_T = TypeVar("_T")


def run_async(coro: Coroutine[object, object, _T]) -> _T:
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


__all__ = [
    "FAST_CONFIG",
    "FakeDataSource",
    "make_entities",
    "make_entity",
    "make_payload",
    "make_transactions",
    "run_async",
]
