"""Chain clients for broadcast and status queries."""

from spendguard.chains.base import (
    BroadcastError,
    ChainClient,
    ChainError,
    ChainTxStatus,
    UnsupportedChainError,
)
from spendguard.chains.registry import ChainRegistry, normalize_chain

__all__ = [
    "BroadcastError",
    "ChainClient",
    "ChainError",
    "ChainRegistry",
    "ChainTxStatus",
    "UnsupportedChainError",
    "normalize_chain",
]
