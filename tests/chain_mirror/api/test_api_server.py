"""Tests for the mirror HTTP API."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest

from chain_mirror.api import ApiServer, ApiServerConfig
from chain_mirror.api.server import MAX_QUERY_SPAN
from chain_mirror.sync.service import MirrorService
from chain_mirror.types import HeightRange
from tests.chain_mirror.helpers import (
    FAST_CONFIG,
    FakeDataSource,
    make_entity,
    make_transactions,
)


@pytest.fixture
async def service() -> MirrorService:
    """A service synced to height 20 on both streams."""
    source = FakeDataSource(range(1, 21))
    mirror = MirrorService(source, ("blocks", "transactions"), FAST_CONFIG)
    await mirror.sync_once()
    return mirror


@pytest.fixture
async def base_url(service: MirrorService) -> AsyncGenerator[str, None]:
    """Base URL of a running server on a free port."""
    server = ApiServer(ApiServerConfig(port=0), service)
    await server.start()
    try:
        yield f"http://127.0.0.1:{server.port}"
    finally:
        await server.stop()


class TestApiServerConfiguration:
    """Tests for API server configuration behavior."""

    def test_defaults(self) -> None:
        """The server binds locally on port 5080 by default."""
        config = ApiServerConfig()

        assert config.host == "127.0.0.1"
        assert config.port == 5080
        assert config.enabled is True

    async def test_disabled_server_does_not_bind(self, service: MirrorService) -> None:
        """A disabled server starts nothing."""
        server = ApiServer(ApiServerConfig(enabled=False), service)

        await server.start()

        assert server.port is None
        await server.stop()


class TestEndpoints:
    """Tests for each route."""

    async def test_health(self, base_url: str) -> None:
        """Health returns a fixed healthy document."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/mirror/v0/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "chain-mirror"}

    async def test_streams(self, base_url: str) -> None:
        """Stream stats use camelCase keys."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/mirror/v0/streams")

        data = response.json()
        assert set(data) == {"blocks", "transactions"}
        assert data["blocks"]["entryCount"] == 10
        assert data["blocks"]["lowWatermark"] == 11
        assert data["blocks"]["highWatermark"] == 20
        assert data["blocks"]["gapPending"] is False

    async def test_entities_in_range(self, base_url: str) -> None:
        """A range request returns entities and gaps."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{base_url}/mirror/v0/streams/blocks/entities",
                params={"from": 18, "to": 22},
            )

        data = response.json()
        assert response.status_code == 200
        assert data["covered"] is False
        assert data["gaps"] == [{"lo": 21, "hi": 22}]
        assert [e["height"] for e in data["entities"]] == [18, 19, 20]
        assert data["entities"][0]["payload"]["stream"] == "blocks"

    async def test_single_height(self, base_url: str) -> None:
        """Omitting 'to' asks for one height."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{base_url}/mirror/v0/streams/transactions/entities", params={"from": 15}
            )

        data = response.json()
        assert data["covered"] is True
        assert (data["from"], data["to"]) == (15, 15)
        assert len(data["entities"]) == 1

    @pytest.mark.parametrize(
        "params",
        [
            {},
            {"from": "abc"},
            {"from": 5, "to": 4},
            {"from": -1, "to": 3},
            {"from": 0, "to": MAX_QUERY_SPAN},
        ],
    )
    async def test_bad_ranges(self, base_url: str, params: dict[str, object]) -> None:
        """Malformed or oversized ranges are rejected."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{base_url}/mirror/v0/streams/blocks/entities", params=params
            )

        assert response.status_code == 400

    async def test_unknown_stream(self, base_url: str) -> None:
        """Streams that are not mirrored are not found."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{base_url}/mirror/v0/streams/receipts/entities", params={"from": 1}
            )

        assert response.status_code == 404

    async def test_metrics(self, base_url: str) -> None:
        """Metrics are served in Prometheus text format."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert 'mirror_high_watermark{stream="blocks"} 20.0' in response.text


class TestLookupRoutes:
    """Tests for the hash lookup routes."""

    @pytest.fixture(autouse=True)
    async def _with_height_21(self, service: MirrorService) -> None:
        await service.engine.merge("blocks", HeightRange(21, 21), [make_entity(21)])
        await service.engine.merge("transactions", HeightRange(21, 21), [make_transactions(21)])

    async def test_block_by_hash(self, base_url: str) -> None:
        """A trusted block is returned with its height and payload."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/mirror/v0/blocks/a-00000021")

        data = response.json()
        assert response.status_code == 200
        assert data["height"] == 21
        assert data["payload"]["header"]["hash"] == "a-00000021"

    async def test_transaction_by_hash(self, base_url: str) -> None:
        """A trusted transaction is returned as stored."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/mirror/v0/transactions/a-tx-21-0")

        data = response.json()
        assert response.status_code == 200
        assert data["hash"] == "a-tx-21-0"
        assert data["block_height"] == 21

    @pytest.mark.parametrize(
        "path",
        ["/mirror/v0/blocks/a-00000099", "/mirror/v0/transactions/a-tx-99-0"],
    )
    async def test_unknown_hash(self, base_url: str, path: str) -> None:
        """Hashes the mirror does not hold are not found."""
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}{path}")

        assert response.status_code == 404
