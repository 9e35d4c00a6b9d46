"""Reconciliation of pending on-chain transactions.

Each pass selects a bounded batch of pending rows. Rows older than the
timeout are failed without consulting the chain; the rest are queried
concurrently and their new state is written one row at a time through a
guarded update that only moves a pending row forward.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendguard.chains.base import ChainError, ChainTxStatus
from spendguard.chains.registry import ChainRegistry
from spendguard.clock import Clock, utcnow
from spendguard.config import Settings
from spendguard.ledger.models import Transaction, TransactionStatus
from spendguard.ledger.repository import LedgerRepository
from spendguard.notifications.dispatcher import NotificationDispatcher
from spendguard.notifications.events import EventType, NotificationEvent

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass
class PendingRow:
    """Snapshot of the fields a pass needs from a pending row."""

    tx_hash: str
    chain: str
    account_id: int
    confirmations: int
    block_number: Optional[int]
    amount_usd: Decimal
    created_at: datetime

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "PendingRow":
        return cls(
            tx_hash=tx.tx_hash,
            chain=tx.chain or "",
            account_id=tx.account_id,
            confirmations=tx.confirmations or 0,
            block_number=tx.block_number,
            amount_usd=tx.amount_usd,
            created_at=tx.created_at,
        )


@dataclass
class ReconcileStats:
    """Counts for one pass."""

    checked: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def record(self, outcome: ReconcileOutcome) -> None:
        self.checked += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def count(self, outcome: ReconcileOutcome) -> int:
        return self.outcomes.get(outcome.value, 0)


class Reconciler:
    """Drives pending transactions to a terminal state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ChainRegistry,
        settings: Settings,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings
        self.dispatcher = dispatcher
        self.clock = clock
        self.timeout = timedelta(minutes=settings.reconcile_timeout_minutes)

    async def reconcile_once(self) -> ReconcileStats:
        """Run one pass over the oldest pending transactions."""
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            pending = await repo.get_pending_onchain(limit=self.settings.reconcile_batch_size)
            rows = [PendingRow.from_transaction(tx) for tx in pending]

        stats = ReconcileStats()
        if not rows:
            return stats

        logger.debug(f"Reconciling {len(rows)} pending transactions")
        now = self.clock()
        expired = [row for row in rows if now - row.created_at > self.timeout]
        live = [row for row in rows if now - row.created_at <= self.timeout]

        for row in expired:
            stats.record(await self._expire(row, now))

        semaphore = asyncio.Semaphore(self.settings.reconcile_max_concurrency)
        observed = await asyncio.gather(*(self._query(semaphore, row) for row in live))

        for row, chain_status in zip(live, observed):
            if chain_status is None:
                stats.record(ReconcileOutcome.ERROR)
                continue
            stats.record(await self._apply(row, chain_status))

        logger.info(f"Reconciliation pass: {stats.checked} checked, {stats.outcomes}")
        return stats

    async def check_by_hash(self, tx_hash: str) -> Optional[Transaction]:
        """Reconcile a single transaction now and return its current row.

        Returns None if the hash is unknown. A chain error leaves the row as is.
        """
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            tx = await repo.get_transaction_by_hash(tx_hash)
            if tx is None:
                return None
            if tx.is_terminal:
                return tx
            row = PendingRow.from_transaction(tx)

        now = self.clock()
        if now - row.created_at > self.timeout:
            await self._expire(row, now)
        else:
            chain_status = await self._query(None, row)
            if chain_status is not None:
                await self._apply(row, chain_status)

        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            return await repo.get_transaction_by_hash(tx_hash)

    async def statistics(self) -> dict[str, int]:
        """Ledger counts by status plus the total."""
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            counts = await repo.get_transaction_counts()

        stats = {status.value: counts.get(status.value, 0) for status in TransactionStatus}
        stats["total"] = sum(counts.values())
        return stats

    async def _query(
        self, semaphore: Optional[asyncio.Semaphore], row: PendingRow
    ) -> Optional[ChainTxStatus]:
        """Ask the chain for the row's state. Failures are transient: return None."""
        try:
            client = self.registry.get(row.chain)
            if semaphore is None:
                return await client.query_status(row.tx_hash)
            async with semaphore:
                return await client.query_status(row.tx_hash)
        except ChainError as e:
            logger.warning(f"Status query failed for {row.chain} {row.tx_hash}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error querying {row.chain} {row.tx_hash}: {e}")
        return None

    async def _apply(self, row: PendingRow, chain_status: ChainTxStatus) -> ReconcileOutcome:
        if chain_status.confirmations < row.confirmations:
            logger.debug(
                f"Ignoring stale observation for {row.tx_hash}: "
                f"{chain_status.confirmations} < {row.confirmations}"
            )
            return ReconcileOutcome.UNCHANGED

        if (
            not chain_status.is_final
            and chain_status.confirmations == row.confirmations
            and (chain_status.block_number is None or chain_status.block_number == row.block_number)
        ):
            return ReconcileOutcome.UNCHANGED

        now = self.clock()
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            changed = await repo.apply_settlement(
                row.tx_hash,
                chain_status.status,
                chain_status.confirmations,
                chain_status.block_number,
                now,
            )
            await session.commit()

        if not changed:
            # Another pass already moved this row forward
            return ReconcileOutcome.UNCHANGED

        logger.info(
            f"Transaction {row.tx_hash} on {row.chain}: {chain_status.status.value} "
            f"({chain_status.confirmations} confirmations)"
        )

        if chain_status.status == TransactionStatus.CONFIRMED:
            await self._notify(row, EventType.TX_CONFIRMED, confirmations=chain_status.confirmations)
            return ReconcileOutcome.CONFIRMED
        if chain_status.status == TransactionStatus.FAILED:
            await self._notify(row, EventType.TX_FAILED, reason="failed on chain")
            return ReconcileOutcome.FAILED
        return ReconcileOutcome.UPDATED

    async def _expire(self, row: PendingRow, now: datetime) -> ReconcileOutcome:
        age_minutes = int((now - row.created_at).total_seconds() // 60)
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            changed = await repo.fail_pending_transaction(row.tx_hash, now)
            if changed:
                await repo.add_audit_log(
                    action="transaction_timeout",
                    resource="transaction",
                    resource_id=row.tx_hash,
                    status="failed",
                    now=now,
                    account_id=row.account_id,
                    metadata={"chain": row.chain, "age_minutes": age_minutes},
                )
            await session.commit()

        if not changed:
            return ReconcileOutcome.UNCHANGED

        logger.warning(f"Transaction {row.tx_hash} on {row.chain} timed out after {age_minutes} minutes")
        await self._notify(row, EventType.TX_FAILED, reason="timed out")
        return ReconcileOutcome.TIMED_OUT

    async def _notify(self, row: PendingRow, event_type: EventType, **details) -> None:
        if self.dispatcher is None:
            return
        try:
            async with self.session_factory() as session:
                account = await LedgerRepository(session).get_account(row.account_id)
        except Exception as e:
            logger.error(f"Could not resolve account {row.account_id} for notification: {e}")
            account = None
        self.dispatcher.notify(
            NotificationEvent(
                account_id=row.account_id,
                type=event_type,
                amount_usd=row.amount_usd,
                telegram_id=account.telegram_id if account else None,
                details={"chain": row.chain, "tx_hash": row.tx_hash, **details},
            )
        )
