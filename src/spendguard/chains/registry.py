"""Chain client registry keyed by chain identifier."""

import logging
from typing import Optional

import httpx

from spendguard.chains.base import ChainClient, UnsupportedChainError
from spendguard.config import Settings

logger = logging.getLogger(__name__)

EVM_CHAINS = ("ethereum", "polygon", "arbitrum", "optimism", "bsc", "celo")
SOLANA_CHAINS = ("solana",)

CHAIN_ALIASES = {
    "eth": "ethereum",
    "matic": "polygon",
    "arb": "arbitrum",
    "op": "optimism",
    "bnb": "bsc",
    "sol": "solana",
}


def normalize_chain(chain: str) -> str:
    """Lower-case a chain identifier and resolve aliases."""
    chain = chain.strip().lower()
    return CHAIN_ALIASES.get(chain, chain)


class ChainRegistry:
    """Holds one client per chain and the HTTP client they share.

    Created once per process (or per test) and closed on shutdown.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self._clients: dict[str, ChainClient] = {}
        self._http = http

    @classmethod
    def from_settings(
        cls, settings: Settings, http: Optional[httpx.AsyncClient] = None
    ) -> "ChainRegistry":
        """Build the registry for all supported chains.

        In dry-run mode every chain gets a simulated client.
        """
        if settings.dry_run:
            from spendguard.chains.simulated import SimulatedChainClient

            registry = cls()
            for chain in EVM_CHAINS + SOLANA_CHAINS:
                registry.register(chain, SimulatedChainClient(chain))
            logger.info("Chain registry running in dry-run mode (simulated clients)")
            return registry

        from spendguard.chains.evm import EVMChainClient
        from spendguard.chains.solana import SolanaChainClient

        http = http or httpx.AsyncClient(timeout=settings.rpc_timeout_seconds)
        registry = cls(http)
        for chain in EVM_CHAINS:
            registry.register(chain, EVMChainClient(chain, settings.get_rpc_url(chain), http))
        registry.register(
            "solana",
            SolanaChainClient(
                settings.get_rpc_url("solana"),
                http,
                finalized_confirmations=settings.solana_finalized_confirmations,
            ),
        )
        return registry

    def register(self, chain: str, client: ChainClient) -> None:
        self._clients[normalize_chain(chain)] = client

    def get(self, chain: str) -> ChainClient:
        """Get the client for ``chain``.

        Raises:
            UnsupportedChainError: If no client is registered
        """
        client = self._clients.get(normalize_chain(chain))
        if client is None:
            raise UnsupportedChainError(f"Unsupported chain: {chain}")
        return client

    def supports(self, chain: str) -> bool:
        return normalize_chain(chain) in self._clients

    @property
    def chains(self) -> list[str]:
        return sorted(self._clients)

    async def aclose(self) -> None:
        """Close all clients and the shared HTTP client."""
        for client in self._clients.values():
            await client.aclose()
        if self._http is not None:
            await self._http.aclose()
            self._http = None
