"""Simulated chain client for dry-run mode (no network access)."""

import hashlib
import logging

from spendguard.chains.base import BroadcastError, ChainClient, ChainTxStatus
from spendguard.ledger.models import TransactionStatus

logger = logging.getLogger(__name__)


class SimulatedChainClient(ChainClient):
    """Deterministic fake chain.

    The hash of a broadcast is derived from the payload, so the same signed
    payload always yields the same hash. Each status query adds one
    confirmation until ``confirm_after`` is reached.
    """

    def __init__(self, chain: str, confirm_after: int = 3, start_block: int = 1_000_000):
        super().__init__(chain)
        self.confirm_after = confirm_after
        self.start_block = start_block
        self._confirmations: dict[str, int] = {}
        self._blocks: dict[str, int] = {}

    async def broadcast(self, signed_payload: str) -> str:
        if not signed_payload:
            raise BroadcastError("empty payload")

        tx_hash = "0x" + hashlib.sha256(f"{self.chain}:{signed_payload}".encode()).hexdigest()
        if tx_hash not in self._confirmations:
            self._confirmations[tx_hash] = 0
            self._blocks[tx_hash] = self.start_block + len(self._blocks)
        logger.info(f"[SIMULATED] Broadcast {self.chain} transaction {tx_hash}")
        return tx_hash

    async def query_status(self, tx_hash: str) -> ChainTxStatus:
        if tx_hash not in self._confirmations:
            return ChainTxStatus(status=TransactionStatus.PENDING)

        confirmations = self._confirmations[tx_hash] + 1
        self._confirmations[tx_hash] = confirmations
        status = (
            TransactionStatus.CONFIRMED
            if confirmations >= self.confirm_after
            else TransactionStatus.PENDING
        )
        return ChainTxStatus(
            status=status,
            confirmations=confirmations,
            block_number=self._blocks[tx_hash],
        )
