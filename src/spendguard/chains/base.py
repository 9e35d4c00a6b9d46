"""Chain client interface.

One implementation per chain family; the settlement code talks only to
this interface and never branches on the chain itself.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from spendguard.ledger.models import TransactionStatus

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """RPC or transport failure talking to a chain."""

    pass


class UnsupportedChainError(ChainError):
    """No client is registered for the requested chain."""

    pass


class BroadcastError(ChainError):
    """The chain rejected a signed transaction."""

    pass


@dataclass
class ChainTxStatus:
    """Chain-observed state of a transaction.

    ``status`` is one of PENDING, CONFIRMED or FAILED.
    """

    status: TransactionStatus
    confirmations: int = 0
    block_number: Optional[int] = None

    @property
    def is_final(self) -> bool:
        return self.status != TransactionStatus.PENDING


class ChainClient(ABC):
    """Abstract base class for chain clients."""

    def __init__(self, chain: str):
        self.chain = chain.lower()

    @abstractmethod
    async def broadcast(self, signed_payload: str) -> str:
        """Push a pre-signed transaction to the network.

        Args:
            signed_payload: Serialized signed transaction (hex or base64)

        Returns:
            Transaction hash / signature

        Raises:
            BroadcastError: If the node rejects the transaction
            ChainError: On transport failure
        """
        pass

    @abstractmethod
    async def query_status(self, tx_hash: str) -> ChainTxStatus:
        """Get current status and confirmation count.

        Raises:
            ChainError: On transport failure
        """
        pass

    async def aclose(self) -> None:
        """Release resources owned by the client."""
        pass
