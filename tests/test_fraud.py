"""Tests for fraud scoring."""

from datetime import timedelta
from decimal import Decimal

import pytest

from spendguard.fraud.engine import FraudCheckRequest, FraudEngine, level_for_score
from spendguard.ledger.models import RiskLevel, TransactionKind, TransactionStatus
from spendguard.rules import RuleSet

from conftest import FixedClock, make_settings

BAD_ADDRESS = "0xDeAdBeEf00000000000000000000000000000001"


@pytest.fixture
def engine(clock: FixedClock) -> FraudEngine:
    rules = RuleSet.from_dict({"known_bad_counterparties": [BAD_ADDRESS]})
    return FraudEngine(make_settings(), rules, clock=clock)


async def _history(repo, account_id, amounts, clock, counterparty=None, card_id=None, hours_ago=1):
    for i, amount in enumerate(amounts):
        await repo.create_transaction(
            account_id,
            TransactionKind.CARD,
            Decimal(amount),
            Decimal(amount),
            clock(),
            status=TransactionStatus.APPROVED,
            created_at=clock() - timedelta(hours=hours_ago, minutes=i),
            counterparty=counterparty,
            card_id=card_id,
        )


def _request(account_id, amount, counterparty=None, timezone="UTC", scope="account", scope_id=None):
    return FraudCheckRequest(
        account_id=account_id,
        amount_usd=Decimal(amount),
        channel="card",
        scope=scope,
        scope_id=scope_id if scope_id is not None else account_id,
        counterparty=counterparty,
        timezone=timezone,
    )


class TestRiskLevels:
    """Tests for score-to-level mapping."""

    def test_thresholds(self):
        assert level_for_score(0) == RiskLevel.LOW
        assert level_for_score(14) == RiskLevel.LOW
        assert level_for_score(15) == RiskLevel.MEDIUM
        assert level_for_score(30) == RiskLevel.HIGH
        assert level_for_score(49) == RiskLevel.HIGH
        assert level_for_score(50) == RiskLevel.CRITICAL
        assert level_for_score(100) == RiskLevel.CRITICAL


class TestFraudRules:
    """Tests for individual rules."""

    @pytest.mark.asyncio
    async def test_no_history_is_clean(self, ledger_repo, engine):
        account = await ledger_repo.create_account("a")

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "5000"))

        assert verdict.risk_score == 0
        assert verdict.level == RiskLevel.LOW
        assert not verdict.is_suspicious

    @pytest.mark.asyncio
    async def test_large_spike(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 5, clock)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "100"))

        assert verdict.reasons == ["LARGE_SPIKE"]
        assert verdict.risk_score == 30
        assert verdict.level == RiskLevel.HIGH
        assert verdict.is_suspicious

    @pytest.mark.asyncio
    async def test_below_spike_multiplier(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 5, clock)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "99"))

        assert "LARGE_SPIKE" not in verdict.reasons

    @pytest.mark.asyncio
    async def test_new_recipient(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 5, clock)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "40", counterparty="0xnew"))

        assert verdict.reasons == ["NEW_RECIPIENT"]
        assert verdict.level == RiskLevel.MEDIUM
        assert not verdict.is_suspicious

    @pytest.mark.asyncio
    async def test_common_recipient_not_flagged(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 3, clock, counterparty="0xFriend")

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "40", counterparty="0xfriend"))

        assert "NEW_RECIPIENT" not in verdict.reasons

    @pytest.mark.asyncio
    async def test_spike_to_new_recipient_is_critical(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 5, clock)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "200", counterparty="0xnew"))

        assert verdict.reasons == ["LARGE_SPIKE", "NEW_RECIPIENT"]
        assert verdict.risk_score == 55
        assert verdict.level == RiskLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_velocity(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 6, clock, hours_ago=0)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "10"))

        assert verdict.reasons == ["VELOCITY"]
        assert verdict.risk_score == 20

    @pytest.mark.asyncio
    async def test_velocity_threshold_not_reached(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        await _history(ledger_repo, account.id, ["10"] * 5, clock, hours_ago=0)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "10"))

        assert "VELOCITY" not in verdict.reasons

    @pytest.mark.asyncio
    async def test_known_bad_counterparty_case_insensitive(self, ledger_repo, engine):
        account = await ledger_repo.create_account("a")

        verdict = await engine.evaluate(
            ledger_repo, _request(account.id, "1", counterparty=BAD_ADDRESS.lower())
        )

        assert verdict.reasons == ["KNOWN_BAD_COUNTERPARTY"]
        assert verdict.level == RiskLevel.CRITICAL


class TestUnusualHour:
    """Tests for the night-time rule."""

    @pytest.mark.asyncio
    async def test_night_spend_by_day_account(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        clock.now = clock.now.replace(hour=3)
        # Previous afternoon
        await _history(ledger_repo, account.id, ["10"] * 4, clock, hours_ago=15)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "10"))

        assert verdict.reasons == ["UNUSUAL_HOUR"]
        assert verdict.risk_score == 10
        assert verdict.level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_night_owl_account_not_flagged(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")
        clock.now = clock.now.replace(hour=3)
        # Half of the history falls at night
        await _history(ledger_repo, account.id, ["10"] * 2, clock, hours_ago=1)
        await _history(ledger_repo, account.id, ["10"] * 2, clock, hours_ago=10)

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "10"))

        assert "UNUSUAL_HOUR" not in verdict.reasons

    @pytest.mark.asyncio
    async def test_hour_uses_account_timezone(self, ledger_repo, engine, clock):
        account = await ledger_repo.create_account("a")

        # 12:00 UTC is 01:00 the next day in Auckland (NZDT)
        verdict = await engine.evaluate(ledger_repo, _request(account.id, "10", timezone="Pacific/Auckland"))

        assert verdict.reasons == ["UNUSUAL_HOUR"]

    @pytest.mark.asyncio
    async def test_unknown_timezone_falls_back_to_utc(self, ledger_repo, engine):
        account = await ledger_repo.create_account("a")

        verdict = await engine.evaluate(ledger_repo, _request(account.id, "10", timezone="Mars/Base"))

        assert verdict.reasons == []
