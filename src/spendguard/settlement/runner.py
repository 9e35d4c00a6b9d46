"""Reconciliation worker.

Runs reconciliation passes on a fixed interval and purges expired
idempotency records. Shutdown lets an in-flight pass finish.

Usage:
    python -m spendguard.settlement.runner --interval 30
    python -m spendguard.settlement.runner --once
"""

import argparse
import asyncio
import logging
from typing import Optional

from spendguard.idempotency.guard import IdempotencyGuard
from spendguard.settlement.reconciler import Reconciler, ReconcileStats

logger = logging.getLogger(__name__)


class ReconciliationRunner:
    """Background loop around a ``Reconciler``."""

    def __init__(
        self,
        reconciler: Reconciler,
        interval: float = 30.0,
        idempotency: Optional[IdempotencyGuard] = None,
    ):
        """Initialize runner.

        Args:
            reconciler: Reconciler to drive
            interval: Seconds between passes
            idempotency: Guard whose expired records are purged each pass
        """
        self.reconciler = reconciler
        self.interval = interval
        self.idempotency = idempotency
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> ReconcileStats:
        """Run a single pass plus housekeeping."""
        stats = await self.reconciler.reconcile_once()
        if self.idempotency is not None:
            await self.idempotency.purge_expired()
        return stats

    async def run(self) -> None:
        """Run passes until ``stop`` is called."""
        logger.info(f"Starting reconciliation loop (interval: {self.interval}s)")

        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation pass failed: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reconciliation loop stopped")

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name="reconciliation-runner")
        return self._task

    async def stop(self) -> None:
        """Signal the loop and wait for the current pass to finish."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None


async def main():
    """Main entry point."""
    from spendguard.config import get_settings
    from spendguard.ledger.database import close_db, init_db
    from spendguard.services import Services

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run transaction reconciliation")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.reconcile_interval_seconds,
        help="Seconds between passes (default: RECONCILE_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run once and exit",
    )
    args = parser.parse_args()

    await init_db()
    services = Services.build(settings)
    services.dispatcher.start()
    runner = ReconciliationRunner(
        services.reconciler, interval=args.interval, idempotency=services.idempotency
    )

    try:
        if args.once:
            stats = await runner.run_once()
            print(f"Checked {stats.checked} transactions: {stats.outcomes}")
        else:
            await runner.run()
    finally:
        await services.aclose()
        await close_db()


def cli():
    """Console script entry point."""
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(main())


if __name__ == "__main__":
    cli()
