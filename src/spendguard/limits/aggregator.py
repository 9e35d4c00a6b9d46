"""Time-windowed spend totals computed from the transaction ledger.

All totals are derived from ledger rows, never from cached counters, and
include pending entries so that in-flight spends count against the cap.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from spendguard.clock import Clock, utc_day_bounds, utcnow
from spendguard.config import Settings
from spendguard.ledger.models import SETTLED_STATUSES, TransactionStatus
from spendguard.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


@dataclass
class DailyLimitCheck:
    """Outcome of a daily cap check."""

    allowed: bool
    spent_today: Decimal
    pending_today: Decimal
    remaining: Decimal
    limit: Decimal
    # True when the totals could not be computed (allowed is then False)
    error: bool = False


@dataclass
class DailySummary:
    """Display summary of today's spend."""

    spent: Decimal
    pending: Decimal
    remaining: Decimal
    limit: Decimal
    percent_used: float


class LimitAggregator:
    """Computes daily totals and velocity counts for an account, card or wallet.

    Read-only; safe to call concurrently for the same scope.
    """

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.settings = settings
        self.clock = clock

    async def check_daily(
        self,
        repo: LedgerRepository,
        scope: str,
        scope_id: int,
        amount_usd: Decimal,
        limit: Optional[Decimal] = None,
    ) -> DailyLimitCheck:
        """Check whether ``amount_usd`` fits under the daily cap.

        Fails closed: any error while aggregating yields ``allowed=False``.
        """
        limit = limit if limit is not None else self.settings.daily_limit_usd
        try:
            start, end = utc_day_bounds(self.clock())
            spent_today = await repo.sum_spend(scope, scope_id, start, end)
            pending_today = await repo.sum_spend(
                scope, scope_id, start, end, statuses=(TransactionStatus.PENDING,)
            )
        except Exception as e:
            logger.error(f"Daily limit aggregation failed for {scope} {scope_id}: {e}")
            return DailyLimitCheck(
                allowed=False,
                spent_today=Decimal("0"),
                pending_today=Decimal("0"),
                remaining=Decimal("0"),
                limit=limit,
                error=True,
            )

        allowed = spent_today + amount_usd <= limit
        result = DailyLimitCheck(
            allowed=allowed,
            spent_today=spent_today,
            pending_today=pending_today,
            remaining=max(Decimal("0"), limit - spent_today),
            limit=limit,
        )
        logger.info(
            f"Daily limit check {scope}={scope_id}: requested={amount_usd} "
            f"spent={spent_today} pending={pending_today} allowed={allowed}"
        )
        return result

    async def velocity_count(self, repo: LedgerRepository, scope: str, scope_id: int) -> int:
        """Number of non-failed spends in the trailing velocity window."""
        since = self.clock() - timedelta(minutes=self.settings.velocity_window_minutes)
        return await repo.count_spend_since(scope, scope_id, since)

    async def daily_summary(self, repo: LedgerRepository, account_id: int) -> DailySummary:
        """Today's settled and pending spend for an account.

        Display only, so unlike ``check_daily`` this falls back to zeros on error.
        """
        limit = self.settings.daily_limit_usd
        try:
            start, end = utc_day_bounds(self.clock())
            spent = await repo.sum_spend("account", account_id, start, end, statuses=SETTLED_STATUSES)
            pending = await repo.sum_spend(
                "account", account_id, start, end, statuses=(TransactionStatus.PENDING,)
            )
        except Exception as e:
            logger.error(f"Failed to get daily spending summary for account {account_id}: {e}")
            return DailySummary(
                spent=Decimal("0"),
                pending=Decimal("0"),
                remaining=limit,
                limit=limit,
                percent_used=0.0,
            )

        total = spent + pending
        return DailySummary(
            spent=spent,
            pending=pending,
            remaining=max(Decimal("0"), limit - total),
            limit=limit,
            percent_used=float(total / limit * 100) if limit else 0.0,
        )
