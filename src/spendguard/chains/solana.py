"""Solana chain client."""

import logging

import httpx

from spendguard.chains.base import BroadcastError, ChainClient, ChainTxStatus
from spendguard.chains.rpc import JsonRpcClient, RpcError
from spendguard.ledger.models import TransactionStatus

logger = logging.getLogger(__name__)


class SolanaChainClient(ChainClient):
    """Confirmation counting from signature commitment levels.

    A ``finalized`` signature settles as confirmed and reports
    ``finalized_confirmations``; a signature with an ``err`` settles as failed.
    """

    def __init__(
        self,
        rpc_url: str,
        http: httpx.AsyncClient,
        finalized_confirmations: int = 32,
        chain: str = "solana",
    ):
        super().__init__(chain)
        self.rpc = JsonRpcClient(http, rpc_url)
        self.finalized_confirmations = finalized_confirmations

    async def broadcast(self, signed_payload: str) -> str:
        """Send a base64-encoded signed transaction."""
        try:
            signature = await self.rpc.call(
                "sendTransaction",
                [signed_payload, {"encoding": "base64", "preflightCommitment": "confirmed"}],
            )
        except RpcError as e:
            raise BroadcastError(e.rpc_message) from e

        if not signature:
            raise BroadcastError("solana: node returned no signature")

        logger.info(f"Broadcast solana transaction {signature}")
        return signature

    async def query_status(self, tx_hash: str) -> ChainTxStatus:
        result = await self.rpc.call(
            "getSignatureStatuses",
            [[tx_hash], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return ChainTxStatus(status=TransactionStatus.PENDING)

        slot = status.get("slot")
        if status.get("err") is not None:
            return ChainTxStatus(
                status=TransactionStatus.FAILED,
                confirmations=status.get("confirmations") or 0,
                block_number=slot,
            )

        if status.get("confirmationStatus") == "finalized":
            return ChainTxStatus(
                status=TransactionStatus.CONFIRMED,
                confirmations=self.finalized_confirmations,
                block_number=slot,
            )

        return ChainTxStatus(
            status=TransactionStatus.PENDING,
            confirmations=status.get("confirmations") or 0,
            block_number=slot,
        )
