"""Remote data sources the mirror synchronizes from."""

from .client import NearRpcClient, UnknownBlockError
from .source import (
    BLOCKS,
    DEFAULT_STREAMS,
    TRANSACTIONS,
    RemoteDataSource,
    block_hash,
    transaction_by_hash,
)

__all__ = [
    "BLOCKS",
    "DEFAULT_STREAMS",
    "TRANSACTIONS",
    "NearRpcClient",
    "RemoteDataSource",
    "UnknownBlockError",
    "block_hash",
    "transaction_by_hash",
]
