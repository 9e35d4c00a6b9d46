"""Tests for daily spend aggregation and velocity counting."""

from datetime import timedelta
from decimal import Decimal

import pytest

from spendguard.ledger.models import TransactionKind, TransactionStatus
from spendguard.ledger.repository import LedgerRepository
from spendguard.limits.aggregator import LimitAggregator

from conftest import FixedClock, make_settings


class BrokenRepository:
    """Repository whose aggregate queries fail."""

    async def sum_spend(self, *args, **kwargs):
        raise RuntimeError("database unavailable")


async def _spend(repo: LedgerRepository, account_id: int, amount: str, status, created_at, **fields):
    await repo.create_transaction(
        account_id,
        TransactionKind.CARD,
        Decimal(amount),
        Decimal(amount),
        created_at,
        status=status,
        created_at=created_at,
        **fields,
    )


@pytest.fixture
def aggregator(clock: FixedClock) -> LimitAggregator:
    return LimitAggregator(make_settings(daily_limit_usd=Decimal("1000")), clock=clock)


class TestDailyLimit:
    """Tests for the daily cap check."""

    @pytest.mark.asyncio
    async def test_pending_counts_against_cap(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        await _spend(ledger_repo, account.id, "950", TransactionStatus.PENDING, clock())

        check = await aggregator.check_daily(ledger_repo, "account", account.id, Decimal("100"))

        assert check.allowed is False
        assert check.spent_today == Decimal("950")
        assert check.pending_today == Decimal("950")
        assert check.remaining == Decimal("50")

    @pytest.mark.asyncio
    async def test_exact_limit_allowed(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        await _spend(ledger_repo, account.id, "900", TransactionStatus.APPROVED, clock())

        check = await aggregator.check_daily(ledger_repo, "account", account.id, Decimal("100"))

        assert check.allowed is True

    @pytest.mark.asyncio
    async def test_failed_and_yesterday_excluded(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        await _spend(ledger_repo, account.id, "800", TransactionStatus.FAILED, clock())
        await _spend(
            ledger_repo, account.id, "800", TransactionStatus.CONFIRMED, clock() - timedelta(days=1)
        )

        check = await aggregator.check_daily(ledger_repo, "account", account.id, Decimal("500"))

        assert check.allowed is True
        assert check.spent_today == Decimal("0")

    @pytest.mark.asyncio
    async def test_day_rolls_over_at_utc_midnight(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        clock.now = clock.now.replace(hour=23, minute=59)
        await _spend(ledger_repo, account.id, "1000", TransactionStatus.APPROVED, clock())

        assert not (await aggregator.check_daily(ledger_repo, "account", account.id, Decimal("1"))).allowed

        clock.advance(minutes=2)
        assert (await aggregator.check_daily(ledger_repo, "account", account.id, Decimal("1"))).allowed

    @pytest.mark.asyncio
    async def test_card_scope_uses_explicit_limit(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        card = await ledger_repo.create_card(
            account.id, allowed_mcc=[], blocked_mcc=[], allowed_countries=[], blocked_countries=[]
        )
        await _spend(ledger_repo, account.id, "40", TransactionStatus.APPROVED, clock(), card_id=card.id)

        check = await aggregator.check_daily(
            ledger_repo, "card", card.id, Decimal("20"), limit=Decimal("50")
        )

        assert check.allowed is False
        assert check.limit == Decimal("50")

    @pytest.mark.asyncio
    async def test_fails_closed(self, aggregator):
        check = await aggregator.check_daily(BrokenRepository(), "account", 1, Decimal("1"))

        assert check.allowed is False
        assert check.error is True


class TestVelocity:
    """Tests for velocity counting."""

    @pytest.mark.asyncio
    async def test_counts_only_window(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        await _spend(ledger_repo, account.id, "1", TransactionStatus.APPROVED, clock() - timedelta(minutes=11))
        for minutes in (1, 2, 3):
            await _spend(
                ledger_repo, account.id, "1", TransactionStatus.APPROVED, clock() - timedelta(minutes=minutes)
            )
        await _spend(ledger_repo, account.id, "1", TransactionStatus.FAILED, clock())

        assert await aggregator.velocity_count(ledger_repo, "account", account.id) == 3


class TestDailySummary:
    """Tests for the display summary."""

    @pytest.mark.asyncio
    async def test_summary_splits_settled_and_pending(self, ledger_repo, aggregator, clock):
        account = await ledger_repo.create_account("a")
        await _spend(ledger_repo, account.id, "200", TransactionStatus.APPROVED, clock())
        await _spend(ledger_repo, account.id, "50", TransactionStatus.PENDING, clock())

        summary = await aggregator.daily_summary(ledger_repo, account.id)

        assert summary.spent == Decimal("200")
        assert summary.pending == Decimal("50")
        assert summary.remaining == Decimal("750")
        assert summary.percent_used == pytest.approx(25.0)

    @pytest.mark.asyncio
    async def test_summary_falls_back_to_zero(self, aggregator):
        summary = await aggregator.daily_summary(BrokenRepository(), 1)

        assert summary.spent == Decimal("0")
        assert summary.remaining == Decimal("1000")
