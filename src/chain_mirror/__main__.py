"""
Chain mirror CLI entry point.

Mirror the recent blocks and transactions of a NEAR node into a local cache,
keep it fresh in the background, and serve it over HTTP.

Usage::

    python -m chain_mirror
    python -m chain_mirror --rpc-url https://free.rpc.fastnear.com --api-port 5080
    python -m chain_mirror --config mirror.yaml --database mirror.sqlite
    python -m chain_mirror --stream blocks --retention 500 --poll-interval 1

Options:
    --config         Path to a YAML settings file
    --rpc-url        NEAR JSON-RPC endpoint
    --stream         Stream to mirror (blocks, transactions; can be repeated)
    --poll-interval  Seconds between poll cycles
    --retention      Maximum cached entries per stream
    --batch-size     Maximum heights per remote request
    --database       SQLite file for snapshots (default: memory only)
    --api-port       Serve the HTTP API on this port
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from collections.abc import Sequence
from pathlib import Path

import yaml

from chain_mirror.api import ApiServer, ApiServerConfig
from chain_mirror.config import MirrorSettings
from chain_mirror.rpc import BLOCKS, TRANSACTIONS, NearRpcClient
from chain_mirror.storage import ByteStore, MemoryByteStore, SQLiteByteStore
from chain_mirror.sync.service import MirrorService

logger = logging.getLogger(__name__)


class ColoredFormatter(logging.Formatter):
    """Log formatter with ANSI colors per level."""

    # ANSI color codes
    GREY = "\x1b[38;5;244m"
    BLUE = "\x1b[38;5;39m"
    GREEN = "\x1b[38;5;40m"
    YELLOW = "\x1b[38;5;220m"
    RED = "\x1b[38;5;196m"
    BOLD_RED = "\x1b[38;5;196;1m"
    CYAN = "\x1b[38;5;51m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)
        timestamp = f"{self.CYAN}{self.formatTime(record, self.datefmt)}{self.RESET}"
        levelname = f"{color}{record.levelname:8}{self.RESET}"
        name = f"{self.BLUE}{record.name}{self.RESET}"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"{timestamp} {levelname} {name}: {message}"


def setup_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Configure logging for the mirror with optional colors."""
    level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if no_color:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = ColoredFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # httpx logs every request at INFO; one poll cycle issues dozens.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    """Create the command line parser."""
    parser = argparse.ArgumentParser(
        prog="chain-mirror",
        description="Incremental cache of a NEAR node's blocks and transactions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML settings file",
    )
    parser.add_argument(
        "--rpc-url",
        type=str,
        default=None,
        help="NEAR JSON-RPC endpoint (default: $CHAIN_MIRROR_RPC_URL or FastNEAR)",
    )
    parser.add_argument(
        "--stream",
        action="append",
        choices=[BLOCKS, TRANSACTIONS],
        default=None,
        dest="streams",
        help="Stream to mirror (can be repeated, default: all)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between poll cycles",
    )
    parser.add_argument(
        "--retention",
        type=int,
        default=None,
        help="Maximum cached entries per stream",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum heights per remote request",
    )
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help="SQLite file for snapshots (default: keep snapshots in memory)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="Serve the HTTP API on this port",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored logging output",
    )
    return parser


def build_settings(args: argparse.Namespace) -> MirrorSettings:
    """
    Merge the settings file with command line overrides.

    Flags given on the command line win over the file.
    """
    settings = (
        MirrorSettings.from_yaml_file(args.config)
        if args.config is not None
        else MirrorSettings()
    )
    overrides = {
        "rpc_url": args.rpc_url,
        "streams": args.streams,
        "poll_interval": args.poll_interval,
        "retention_limit": args.retention,
        "max_batch_size": args.batch_size,
        "database": args.database,
        "api_port": args.api_port,
    }
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return settings
    return MirrorSettings.model_validate(settings.model_dump() | updates)


def open_store(settings: MirrorSettings) -> ByteStore:
    """Open the snapshot store the settings ask for."""
    if settings.database is not None:
        return SQLiteByteStore(settings.database, settings.snapshot_capacity_bytes)
    return MemoryByteStore(settings.snapshot_capacity_bytes)


async def run_mirror(
    settings: MirrorSettings,
    shutdown: asyncio.Event | None = None,
    *,
    install_signal_handlers: bool = True,
) -> None:
    """
    Run the mirror until shutdown.

    Args:
        settings: Process settings.
        shutdown: Event that stops the mirror when set. Created if omitted.
        install_signal_handlers: Whether to handle SIGINT/SIGTERM.
            Disable for testing or non-main threads.
    """
    if shutdown is None:
        shutdown = asyncio.Event()
    if install_signal_handlers:
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, ValueError, RuntimeError):
            # Cannot add handlers outside main thread.
            pass

    store = open_store(settings)
    api_server: ApiServer | None = None
    try:
        async with NearRpcClient(settings.rpc_url, timeout=settings.request_timeout) as client:
            service = MirrorService(
                source=client,
                streams=settings.streams,
                config=settings.to_sync_config(),
                store=store,
            )
            logger.info("Mirroring %s from %s", ", ".join(settings.streams), settings.rpc_url)
            await service.start()
            try:
                if settings.api_port is not None:
                    api_server = ApiServer(
                        ApiServerConfig(host=settings.api_host, port=settings.api_port),
                        service,
                    )
                    await api_server.start()
                await shutdown.wait()
                logger.info("Shutting down...")
            finally:
                if api_server is not None:
                    await api_server.stop()
                await service.stop()
    finally:
        store.close()


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.no_color)

    try:
        settings = build_settings(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        parser.error(str(exc))

    try:
        asyncio.run(run_mirror(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
