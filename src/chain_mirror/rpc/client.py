"""
NEAR JSON-RPC client implementing the remote data source.

Each stream maps onto the node's ``block`` and ``chunk`` methods:

- **blocks**: one ``block`` call per height; the payload is the block as returned
- **transactions**: the block, then one ``chunk`` call per new chunk; the payload
  is the flattened list of the block's transactions

Skipped Heights
---------------
NEAR does not produce a block at every height. Asking for a missing height
yields a JSON-RPC error whose cause is ``UNKNOWN_BLOCK``. The client treats
that as "no entity here" rather than a failure.

Failure Model
-------------
Any other problem (connection error, HTTP status, RPC error, malformed
response) raises RpcError. A range either succeeds in full or fails. There is
no retry or provider failover here: the sync engine retries on its next pass.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Final, Self

import httpx

from chain_mirror.types import Entity, RpcError

from .source import BLOCKS, TRANSACTIONS

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Final = 10.0
"""HTTP request timeout in seconds."""

UNKNOWN_BLOCK: Final = "UNKNOWN_BLOCK"
"""Error cause the node reports for heights without a block."""


class NearRpcClient:
    """
    Async client for a NEAR node's JSON-RPC endpoint.

    Usable as an async context manager. The underlying HTTP client is created
    lazily so construction needs no running event loop.
    """

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            url: JSON-RPC endpoint of the node.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport, used by tests to mock the node.
        """
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def call(self, method: str, params: Any) -> Any:
        """
        Issue one JSON-RPC call.

        Returns:
            The ``result`` member of the response.

        Raises:
            UnknownBlockError: If the node reports the block does not exist.
            RpcError: On any other failure.
        """
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._http().post(self.url, json=request)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise RpcError(
                f"HTTP error {exc.response.status_code} from {self.url}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RpcError(f"Network error calling {method} on {self.url}: {exc}") from exc
        except ValueError as exc:
            raise RpcError(f"Malformed JSON in {method} response: {exc}") from exc

        if not isinstance(body, dict):
            raise RpcError(f"Unexpected {method} response: {body!r:.200}")

        error = body.get("error")
        if error is not None:
            if not isinstance(error, dict):
                raise RpcError(f"{method} failed: {error}")
            cause = error.get("cause")
            if isinstance(cause, dict) and cause.get("name") == UNKNOWN_BLOCK:
                raise UnknownBlockError(f"{method}: block does not exist")
            raise RpcError(f"{method} failed: {error.get('message', 'RPC error')}")

        if "result" not in body:
            raise RpcError(f"{method} response has no result")
        return body["result"]

    # -------------------------------------------------------------------------
    # Remote data source
    # -------------------------------------------------------------------------

    async def get_head(self) -> int:
        """Height of the latest final block."""
        block = await self.call("block", {"finality": "final"})
        return _block_height(block)

    async def get_block(self, height: int) -> dict[str, Any] | None:
        """
        Fetch a block by height.

        Returns:
            The block, or None if the node has no block at this height.
        """
        try:
            block = await self.call("block", {"block_id": height})
        except UnknownBlockError:
            return None
        if not isinstance(block, dict):
            raise RpcError(f"Unexpected block response at height {height}")
        return block

    async def get_chunk(self, chunk_hash: str) -> dict[str, Any]:
        """Fetch a chunk by hash."""
        chunk = await self.call("chunk", [chunk_hash])
        if not isinstance(chunk, dict):
            raise RpcError(f"Unexpected chunk response for {chunk_hash}")
        return chunk

    async def get_transactions(self, block: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Collect the transactions included in a block.

        Only chunks produced at the block's height are read. Older chunks are
        repeated in later blocks and would duplicate their transactions.
        """
        header = block["header"]
        height = header["height"]
        transactions: list[dict[str, Any]] = []
        for chunk_header in block.get("chunks", []):
            if chunk_header.get("height_included", height) != height:
                continue
            chunk = await self.get_chunk(chunk_header["chunk_hash"])
            for tx in chunk.get("transactions") or []:
                transactions.append(
                    {
                        "hash": tx["hash"],
                        "signer_id": tx["signer_id"],
                        "receiver_id": tx["receiver_id"],
                        "actions": tx.get("actions") or [],
                        "block_height": height,
                        "block_hash": header["hash"],
                        "timestamp": header.get("timestamp"),
                        "timestamp_nanosec": header.get("timestamp_nanosec"),
                    }
                )
        return transactions

    async def get_range(self, stream: str, lo: int, hi: int) -> list[Entity]:
        """Fetch the entities of a stream in ``[lo, hi]``, one height at a time."""
        if stream not in (BLOCKS, TRANSACTIONS):
            raise ValueError(f"Unknown stream {stream!r}")

        entities: list[Entity] = []
        for height in range(lo, hi + 1):
            block = await self.get_block(height)
            if block is None:
                logger.debug("No block at height %d", height)
                continue
            try:
                if stream == BLOCKS:
                    payload: Any = block
                else:
                    payload = await self.get_transactions(block)
            except (KeyError, TypeError) as exc:
                raise RpcError(f"Malformed block at height {height}: {exc}") from exc
            entities.append(Entity(height=height, payload=payload))
        return entities


class UnknownBlockError(RpcError):
    """The node has no block at the requested height or hash."""


def _block_height(block: Any) -> int:
    try:
        return int(block["header"]["height"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RpcError(f"Block response has no height: {exc}") from exc
