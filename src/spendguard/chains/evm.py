"""EVM chain client (Ethereum, Polygon, Arbitrum, Optimism, BSC, Celo)."""

import logging
from typing import Optional

import httpx

from spendguard.chains.base import BroadcastError, ChainClient, ChainTxStatus
from spendguard.chains.rpc import JsonRpcClient, RpcError
from spendguard.ledger.models import TransactionStatus

logger = logging.getLogger(__name__)


def _hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


class EVMChainClient(ChainClient):
    """Confirmation counting from block receipts.

    A receipt with ``status == 0x1`` and at least ``required_confirmations``
    blocks on top settles as confirmed; ``0x0`` settles as failed.
    """

    def __init__(
        self,
        chain: str,
        rpc_url: str,
        http: httpx.AsyncClient,
        required_confirmations: int = 1,
    ):
        super().__init__(chain)
        self.rpc = JsonRpcClient(http, rpc_url)
        self.required_confirmations = required_confirmations

    async def broadcast(self, signed_payload: str) -> str:
        """Send a raw signed transaction via eth_sendRawTransaction."""
        raw = signed_payload if signed_payload.startswith("0x") else f"0x{signed_payload}"
        try:
            tx_hash = await self.rpc.call("eth_sendRawTransaction", [raw])
        except RpcError as e:
            raise BroadcastError(e.rpc_message) from e

        if not tx_hash:
            raise BroadcastError(f"{self.chain}: node returned no transaction hash")

        logger.info(f"Broadcast {self.chain} transaction {tx_hash}")
        return tx_hash

    async def query_status(self, tx_hash: str) -> ChainTxStatus:
        """Read the receipt and the current head to count confirmations."""
        receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return ChainTxStatus(status=TransactionStatus.PENDING)

        block_number = _hex_to_int(receipt.get("blockNumber"))
        if block_number is None:
            return ChainTxStatus(status=TransactionStatus.PENDING)

        latest = _hex_to_int(await self.rpc.call("eth_blockNumber", [])) or block_number
        confirmations = max(0, latest - block_number + 1)

        if receipt.get("status") == "0x0":
            return ChainTxStatus(
                status=TransactionStatus.FAILED,
                confirmations=confirmations,
                block_number=block_number,
            )

        status = (
            TransactionStatus.CONFIRMED
            if confirmations >= self.required_confirmations
            else TransactionStatus.PENDING
        )
        return ChainTxStatus(status=status, confirmations=confirmations, block_number=block_number)
