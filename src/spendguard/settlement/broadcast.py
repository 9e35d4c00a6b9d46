"""Submission of client-signed transactions."""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendguard.chains.registry import ChainRegistry, normalize_chain
from spendguard.clock import Clock, utcnow
from spendguard.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    """Outcome of a submission."""

    tx_hash: str
    transaction_id: int
    # True when the hash was already in the ledger
    duplicate: bool = False


class BroadcastService:
    """Pushes signed payloads to a chain and records their hashes.

    Returns as soon as the node accepts the transaction; confirmation is
    tracked by the reconciler.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ChainRegistry,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.clock = clock

    async def submit(self, chain: str, signed_payload: str, reservation_id: int) -> SubmitResult:
        """Broadcast and attach the resulting hash to a reserved pending entry.

        The reservation is dropped when the node rejects the payload or the
        hash is already in the ledger, which frees its share of the daily cap.

        Raises:
            UnsupportedChainError: If no client handles ``chain``
            BroadcastError: If the node rejects the transaction
            ChainError: On RPC transport failure
        """
        chain = normalize_chain(chain)
        try:
            client = self.registry.get(chain)
            tx_hash = await client.broadcast(signed_payload)
        except Exception:
            await self.release(reservation_id)
            raise

        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            existing = await repo.get_transaction_by_hash(tx_hash)
            if existing is not None:
                await repo.release_reservation(reservation_id)
                await session.commit()
                logger.warning(f"Duplicate broadcast of {chain} transaction {tx_hash}")
                return SubmitResult(tx_hash=tx_hash, transaction_id=existing.id, duplicate=True)

            try:
                await repo.attach_tx_hash(reservation_id, tx_hash, self.clock())
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await repo.get_transaction_by_hash(tx_hash)
                if existing is None:
                    raise
                await repo.release_reservation(reservation_id)
                await session.commit()
                logger.warning(f"Concurrent duplicate broadcast of {tx_hash}")
                return SubmitResult(tx_hash=tx_hash, transaction_id=existing.id, duplicate=True)

        logger.info(f"Recorded pending {chain} transaction {tx_hash} (entry {reservation_id})")
        return SubmitResult(tx_hash=tx_hash, transaction_id=reservation_id)

    async def release(self, reservation_id: int) -> None:
        """Drop a reservation whose broadcast did not go through."""
        async with self.session_factory() as session:
            released = await LedgerRepository(session).release_reservation(reservation_id)
            await session.commit()
        if released:
            logger.info(f"Released spend reservation {reservation_id}")
