"""Interface of the remote ledger the mirror synchronizes from."""

from __future__ import annotations

from typing import Any, Final, Protocol

from pydantic import JsonValue

from chain_mirror.types import Entity

BLOCKS: Final = "blocks"
"""Stream of blocks keyed by height."""

TRANSACTIONS: Final = "transactions"
"""Stream of the transactions included in each block, keyed by block height."""

DEFAULT_STREAMS: Final[tuple[str, ...]] = (BLOCKS, TRANSACTIONS)
"""Streams mirrored when none are configured."""


class RemoteDataSource(Protocol):
    """
    Protocol for the remote data source.

    This abstraction lets the sync engine fetch entities without depending on
    a specific transport. Production uses the NEAR JSON-RPC client; tests use
    in-memory fakes.

    Implementers should:
    - Raise RpcError on any transport, timeout or protocol failure
    - Return entities in ascending height order
    - Omit heights the remote sequence skipped rather than failing
    """

    async def get_head(self) -> int:
        """
        Get the current head height.

        Returns:
            Height of the most recent entity the remote source considers final.

        Raises:
            RpcError: If the head cannot be determined.
        """
        ...

    async def get_range(self, stream: str, lo: int, hi: int) -> list[Entity]:
        """
        Get the entities of a stream in ``[lo, hi]``.

        Either the whole range is returned or RpcError is raised. A partial
        result would be indistinguishable from skipped heights.

        Args:
            stream: Stream name.
            lo: First height (inclusive).
            hi: Last height (inclusive).

        Returns:
            Entities present in the range, ascending by height.

        Raises:
            RpcError: On any failure.
        """
        ...


def block_hash(payload: JsonValue) -> str | None:
    """Hash of a ``blocks`` payload, or None if it carries no header hash."""
    if not isinstance(payload, dict):
        return None
    header = payload.get("header")
    if not isinstance(header, dict):
        return None
    value = header.get("hash")
    return value if isinstance(value, str) else None


def transaction_by_hash(payload: JsonValue, tx_hash: str) -> dict[str, Any] | None:
    """Find a transaction in a ``transactions`` payload by its hash."""
    if not isinstance(payload, list):
        return None
    for tx in payload:
        if isinstance(tx, dict) and tx.get("hash") == tx_hash:
            return tx
    return None
