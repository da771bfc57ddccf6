"""
API server for mirror status, cached data and metrics.

Provides HTTP endpoints for:
- /mirror/v0/health - Health check endpoint
- /mirror/v0/streams - Per-stream stats
- /mirror/v0/streams/{stream}/entities?from=&to= - Trusted entities in a range
- /mirror/v0/blocks/{hash} - A trusted block by hash
- /mirror/v0/transactions/{hash} - A trusted transaction by hash
- /metrics - Prometheus metrics endpoint
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from aiohttp import web

from chain_mirror.metrics import generate_metrics

if TYPE_CHECKING:
    from chain_mirror.sync.service import MirrorService

logger = logging.getLogger(__name__)

MAX_QUERY_SPAN: Final = 1000
"""Largest range a single entities request may ask for."""


async def _handle_health(_request: web.Request) -> web.Response:
    """Handle health check endpoint."""
    return web.json_response({"status": "healthy", "service": "chain-mirror"})


async def _handle_metrics(_request: web.Request) -> web.Response:
    """Handle Prometheus metrics endpoint."""
    return web.Response(
        body=generate_metrics(),
        content_type="text/plain; version=0.0.4; charset=utf-8",
    )


@dataclass(frozen=True, slots=True)
class ApiServerConfig:
    """Configuration for the API server."""

    host: str = "127.0.0.1"
    """Host address to bind to."""

    port: int = 5080
    """Port to listen on. Zero picks a free port."""

    enabled: bool = True
    """Whether the API server is enabled."""


@dataclass(slots=True)
class ApiServer:
    """
    HTTP API server over a mirror service.

    Uses aiohttp to handle HTTP protocol details efficiently.
    """

    config: ApiServerConfig
    """Server configuration."""

    service: MirrorService
    """Mirror whose state is served."""

    _runner: web.AppRunner | None = field(default=None, init=False)
    """The aiohttp application runner."""

    _site: web.TCPSite | None = field(default=None, init=False)
    """The TCP site for the server."""

    def build_app(self) -> web.Application:
        """Create the aiohttp application with every route."""
        app = web.Application()
        app.add_routes(
            [
                web.get("/mirror/v0/health", _handle_health),
                web.get("/metrics", _handle_metrics),
                web.get("/mirror/v0/streams", self._handle_streams),
                web.get("/mirror/v0/streams/{stream}/entities", self._handle_entities),
                web.get("/mirror/v0/blocks/{hash}", self._handle_block),
                web.get("/mirror/v0/transactions/{hash}", self._handle_transaction),
            ]
        )
        return app

    @property
    def port(self) -> int | None:
        """The bound port, once started."""
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            return int(address[1])
        return None

    async def start(self) -> None:
        """Start the API server in the background."""
        if not self.config.enabled:
            logger.info("API server is disabled")
            return

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await self._site.start()

        logger.info("API server listening on %s:%s", self.config.host, self.port)

    async def run(self) -> None:
        """
        Run the API server until shutdown.

        This method blocks until stop() is called.
        """
        await self.start()

        # Keep running until stopped
        while self._runner is not None:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Gracefully stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("API server stopped")

    async def _handle_streams(self, _request: web.Request) -> web.Response:
        """
        Handle stream stats endpoint.

        Response format:
        {
            "blocks": {"entryCount": 10, "lowWatermark": 1, "highWatermark": 10, ...},
            ...
        }
        """
        stats = self.service.stats()
        return web.json_response(
            {stream: s.model_dump(mode="json", by_alias=True) for stream, s in stats.items()}
        )

    async def _handle_entities(self, request: web.Request) -> web.Response:
        """
        Handle entity range endpoint.

        Both bounds are inclusive. ``to`` defaults to ``from``.

        Response format:
        {
            "stream": "blocks",
            "from": 5,
            "to": 9,
            "covered": false,
            "gaps": [{"lo": 9, "hi": 9}],
            "entities": [{"height": 5, "payload": {...}}, ...]
        }
        """
        stream = request.match_info["stream"]
        if stream not in self.service.streams:
            raise web.HTTPNotFound(reason=f"Unknown stream {stream}")

        try:
            lo = int(request.query["from"])
            hi = int(request.query.get("to", lo))
        except KeyError as exc:
            raise web.HTTPBadRequest(reason="Missing 'from' parameter") from exc
        except ValueError as exc:
            raise web.HTTPBadRequest(reason="Range bounds must be integers") from exc

        if lo < 0 or hi < lo:
            raise web.HTTPBadRequest(reason=f"Invalid range [{lo}, {hi}]")
        if hi - lo + 1 > MAX_QUERY_SPAN:
            raise web.HTTPBadRequest(reason=f"Range exceeds {MAX_QUERY_SPAN} heights")

        result = self.service.query(stream, (lo, hi))
        return web.json_response(
            {
                "stream": stream,
                "from": lo,
                "to": hi,
                "covered": result.is_covered,
                "gaps": [{"lo": gap.lo, "hi": gap.hi} for gap in result.gaps],
                "entities": [entity.model_dump(mode="json") for entity in result.entities],
            }
        )

    async def _handle_block(self, request: web.Request) -> web.Response:
        """
        Handle block lookup by hash.

        Response format:
        {"height": 12, "payload": {"header": {"hash": "...", ...}, ...}}
        """
        entity = self.service.find_block(request.match_info["hash"])
        if entity is None:
            raise web.HTTPNotFound(reason="Block not in the mirror")
        return web.json_response(entity.model_dump(mode="json"))

    async def _handle_transaction(self, request: web.Request) -> web.Response:
        """Handle transaction lookup by hash. Returns the cached transaction as stored."""
        tx = self.service.find_transaction(request.match_info["hash"])
        if tx is None:
            raise web.HTTPNotFound(reason="Transaction not in the mirror")
        return web.json_response(tx)
