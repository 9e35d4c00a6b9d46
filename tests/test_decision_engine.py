"""Tests for the card and on-chain decision pipeline."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from spendguard.authorization.codes import DeclineCode
from spendguard.authorization.engine import CardAuthorizationRequest, SendRequest
from spendguard.ledger.models import (
    CardStatus,
    FraudAlert,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from spendguard.ledger.repository import LedgerRepository
from spendguard.notifications.events import EventType
from spendguard.rules import RuleSet
from spendguard.services import Services
from sqlalchemy import func, select

from conftest import make_settings

SAN_FRANCISCO = (37.7749, -122.4194)
LOS_ANGELES = (34.0522, -118.2437)


def swipe(card_id: int, amount: str = "25", **overrides) -> CardAuthorizationRequest:
    values = dict(
        instrument_id=card_id,
        amount=Decimal(amount),
        currency="USD",
        merchant_country="US",
        mcc="5411",
        merchant_name="Corner Grocery",
    )
    values.update(overrides)
    return CardAuthorizationRequest(**values)


async def _count(session_factory, model, *criteria) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model).where(*criteria)
        return (await session.execute(stmt)).scalar()


async def _card_state(session_factory, card_id: int):
    async with session_factory() as session:
        return await LedgerRepository(session).get_card(card_id)


@pytest_asyncio.fixture
async def account_id(seed) -> int:
    return await seed.account()


class TestCardPipeline:
    """Ordered checks on the card rail."""

    @pytest.mark.asyncio
    async def test_approve_records_transaction(self, services: Services, seed, account_id, delivered):
        card_id = await seed.card(account_id)

        result = await services.engine.authorize(swipe(card_id, "100"))

        assert result.approved is True
        assert result.reason_code is None
        assert result.cashback_amount == Decimal("2.00")
        assert result.is_anomaly is False

        card = await _card_state(services.session_factory, card_id)
        assert card.total_spent == Decimal("100")
        assert card.monthly_spent == Decimal("100")
        assert card.last_used_at == services.clock()

        async with services.session_factory() as session:
            tx = await LedgerRepository(session).get_transaction(result.transaction_id)
        assert tx.status == TransactionStatus.APPROVED
        assert tx.kind == TransactionKind.CARD
        assert tx.mcc == "5411"

        await services.dispatcher.drain()
        assert [e.type for e in delivered] == [EventType.CARD_APPROVED]

    @pytest.mark.asyncio
    async def test_unknown_card(self, services: Services):
        result = await services.engine.authorize(swipe(4242))

        assert result.approved is False
        assert result.reason_code == DeclineCode.CARD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_frozen_card(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, status=CardStatus.FROZEN)

        result = await services.engine.authorize(swipe(card_id))

        assert result.reason_code == DeclineCode.CARD_INACTIVE

    @pytest.mark.asyncio
    async def test_country_checked_before_spending_limit(self, services: Services, seed, account_id):
        card_id = await seed.card(
            account_id, blocked_countries=["RU"], spending_limit=Decimal("10")
        )

        result = await services.engine.authorize(swipe(card_id, "100", merchant_country="ru"))

        assert result.reason_code == DeclineCode.COUNTRY_BLOCKED

    @pytest.mark.asyncio
    async def test_mcc_checked_before_country(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, blocked_mcc=["5411"], allowed_countries=["DE"])

        result = await services.engine.authorize(swipe(card_id))

        assert result.reason_code == DeclineCode.MERCHANT_CATEGORY_BLOCKED

    @pytest.mark.asyncio
    async def test_allow_lists(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, allowed_mcc=["5812"], allowed_countries=["US"])

        assert (await services.engine.authorize(swipe(card_id))).reason_code == (
            DeclineCode.MERCHANT_CATEGORY_NOT_ALLOWED
        )
        assert (
            await services.engine.authorize(swipe(card_id, mcc="5812", merchant_country="CA"))
        ).reason_code == DeclineCode.COUNTRY_NOT_ALLOWED
        assert (await services.engine.authorize(swipe(card_id, mcc="5812"))).approved

    @pytest.mark.asyncio
    async def test_spending_and_monthly_limits(self, services: Services, seed, account_id):
        lifetime = await seed.card(account_id, spending_limit=Decimal("100"), total_spent=Decimal("90"))
        monthly = await seed.card(account_id, monthly_limit=Decimal("100"), monthly_spent=Decimal("95"))

        assert (await services.engine.authorize(swipe(lifetime, "20"))).reason_code == (
            DeclineCode.SPENDING_LIMIT_EXCEEDED
        )
        assert (await services.engine.authorize(swipe(monthly, "20"))).reason_code == (
            DeclineCode.MONTHLY_LIMIT_EXCEEDED
        )

    @pytest.mark.asyncio
    async def test_daily_limit_includes_pending(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id)
        await seed.transaction(
            account_id, Decimal("950"), status=TransactionStatus.PENDING, card_id=card_id
        )

        result = await services.engine.authorize(swipe(card_id, "100"))

        assert result.reason_code == DeclineCode.DAILY_LIMIT_EXCEEDED
        assert (await services.engine.authorize(swipe(card_id, "50"))).approved

    @pytest.mark.asyncio
    async def test_card_daily_limit_overrides_default(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, daily_limit=Decimal("30"))

        assert (await services.engine.authorize(swipe(card_id, "20"))).approved
        assert (await services.engine.authorize(swipe(card_id, "20"))).reason_code == (
            DeclineCode.DAILY_LIMIT_EXCEEDED
        )

    @pytest.mark.asyncio
    async def test_velocity_sixth_request_declined(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id)

        for _ in range(5):
            assert (await services.engine.authorize(swipe(card_id, "10"))).approved
            services.clock.advance(seconds=30)

        result = await services.engine.authorize(swipe(card_id, "10"))
        assert result.reason_code == DeclineCode.VELOCITY_EXCEEDED

        services.clock.advance(minutes=10)
        assert (await services.engine.authorize(swipe(card_id, "10"))).approved

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id, balance_usd=Decimal("50"))
        card_id = await seed.card(account_id, wallet_id=wallet_id)

        result = await services.engine.authorize(swipe(card_id, "80"))

        assert result.reason_code == DeclineCode.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_geo_anomaly_approved_and_flagged(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id)
        first = await services.engine.authorize(
            swipe(card_id, latitude=SAN_FRANCISCO[0], longitude=SAN_FRANCISCO[1])
        )
        assert first.approved and not first.is_anomaly

        services.clock.advance(minutes=30)
        second = await services.engine.authorize(
            swipe(card_id, latitude=LOS_ANGELES[0], longitude=LOS_ANGELES[1])
        )

        assert second.approved is True
        assert second.is_anomaly is True

    @pytest.mark.asyncio
    async def test_disposable_card_second_use_cancels(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, is_disposable=True)

        assert (await services.engine.authorize(swipe(card_id))).approved
        result = await services.engine.authorize(swipe(card_id))

        assert result.reason_code == DeclineCode.DISPOSABLE_CARD_USED
        card = await _card_state(services.session_factory, card_id)
        assert card.status == CardStatus.CANCELLED
        assert card.cancelled_at is not None

        async with services.session_factory() as session:
            logs = await LedgerRepository(session).get_audit_logs("card", str(card_id))
        assert [log.action for log in logs] == ["disposable_card_cancelled"]

        # Cancelled now, so further swipes are inactive
        assert (await services.engine.authorize(swipe(card_id))).reason_code == DeclineCode.CARD_INACTIVE

    @pytest.mark.asyncio
    async def test_system_error_on_exception(self, services: Services, seed, account_id, monkeypatch):
        card_id = await seed.card(account_id)

        async def boom(*args, **kwargs):
            raise RuntimeError("fraud store down")

        monkeypatch.setattr(services.fraud, "evaluate", boom)
        result = await services.engine.authorize(swipe(card_id))

        assert result.approved is False
        assert result.reason_code == DeclineCode.SYSTEM_ERROR
        assert result.is_system_error
        assert await _count(services.session_factory, Transaction) == 0


class TestCashback:
    """Cashback computation."""

    @pytest.mark.asyncio
    async def test_card_rate(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, cashback_rate=Decimal("0.05"))

        result = await services.engine.authorize(swipe(card_id, "33.33"))

        assert result.cashback_amount == Decimal("1.67")

    @pytest.mark.asyncio
    async def test_high_risk_mcc_earns_nothing(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id)

        result = await services.engine.authorize(swipe(card_id, "100", mcc="7995"))

        assert result.approved is True
        assert result.cashback_amount == Decimal("0.00")
        assert result.is_anomaly is True

    @pytest.mark.asyncio
    async def test_foreign_currency_converted(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id)

        result = await services.engine.authorize(swipe(card_id, "100", currency="EUR"))

        assert result.approved is True
        card = await _card_state(services.session_factory, card_id)
        assert card.total_spent == Decimal("108")


class TestConcurrency:
    """Concurrent authorizations must not jointly exceed a limit."""

    @pytest.mark.asyncio
    async def test_concurrent_daily_cap(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, daily_limit=Decimal("500"))

        results = await asyncio.gather(
            *(services.engine.authorize(swipe(card_id, "150")) for _ in range(8))
        )

        approved = [r for r in results if r.approved]
        assert len(approved) == 3
        assert all(
            r.reason_code == DeclineCode.DAILY_LIMIT_EXCEEDED for r in results if not r.approved
        )
        card = await _card_state(services.session_factory, card_id)
        assert card.total_spent == Decimal("450")

    @pytest.mark.asyncio
    async def test_concurrent_disposable_single_use(self, services: Services, seed, account_id):
        card_id = await seed.card(account_id, is_disposable=True)

        results = await asyncio.gather(*(services.engine.authorize(swipe(card_id)) for _ in range(4)))

        assert sum(1 for r in results if r.approved) == 1

    @pytest.mark.asyncio
    async def test_sends_from_separate_workers_share_daily_cap(
        self, services: Services, settings, session_factory, clock, seed, account_id
    ):
        # A second wiring has its own lock registry, like another uvicorn worker
        other = Services.build(settings=settings, session_factory=session_factory, clock=clock, sinks=[])
        wallet_id = await seed.wallet(account_id)

        def send(payload: str) -> SendRequest:
            return SendRequest(
                account_id=account_id,
                wallet_id=wallet_id,
                chain="ethereum",
                signed_payload=payload,
                to_address="0x1111111111111111111111111111111111111111",
                amount_usd=Decimal("600"),
            )

        try:
            results = await asyncio.gather(
                services.engine.authorize_send(send("0xf86c01")),
                other.engine.authorize_send(send("0xf86c02")),
            )
        finally:
            await other.aclose()

        assert sorted(r.approved for r in results) == [False, True]
        declined = next(r for r in results if not r.approved)
        assert declined.reason_code == DeclineCode.DAILY_LIMIT_EXCEEDED
        async with services.session_factory() as session:
            start, end = clock() - timedelta(hours=12), clock() + timedelta(hours=12)
            total = await LedgerRepository(session).sum_spend("account", account_id, start, end)
        assert total == Decimal("600")
        assert await _count(services.session_factory, Transaction) == 1

    @pytest.mark.asyncio
    async def test_concurrent_sends_respect_velocity(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id)

        results = await asyncio.gather(
            *(
                services.engine.authorize_send(
                    SendRequest(
                        account_id=account_id,
                        wallet_id=wallet_id,
                        chain="ethereum",
                        signed_payload=f"0xf86c{i:02x}",
                        to_address="0x1111111111111111111111111111111111111111",
                        amount_usd=Decimal("10"),
                    )
                )
                for i in range(7)
            )
        )

        assert sum(1 for r in results if r.approved) == 5
        assert all(r.reason_code == DeclineCode.VELOCITY_EXCEEDED for r in results if not r.approved)


class TestFraudModes:
    """Blocking and review-only fraud handling."""

    BAD_MERCHANT = "Totally Legit Casino"

    @pytest_asyncio.fixture
    async def fraud_services(self, session_factory, clock, delivered, request):
        review_only = getattr(request, "param", False)

        async def collect(event):
            delivered.append(event)

        built = Services.build(
            settings=make_settings(fraud_review_only=review_only),
            session_factory=session_factory,
            rules=RuleSet.from_dict({"known_bad_counterparties": [self.BAD_MERCHANT]}),
            clock=clock,
            sinks=[collect],
        )
        yield built
        await built.aclose()

    @pytest.mark.asyncio
    async def test_blocking_mode_declines(self, fraud_services: Services, seed, delivered):
        account_id = await seed.account()
        card_id = await seed.card(account_id)

        result = await fraud_services.engine.authorize(swipe(card_id, merchant_name=self.BAD_MERCHANT))

        assert result.reason_code == DeclineCode.FRAUD_DETECTED
        assert "KNOWN_BAD_COUNTERPARTY" in result.message
        assert await _count(fraud_services.session_factory, FraudAlert, FraudAlert.blocked.is_(True)) == 1
        assert await _count(fraud_services.session_factory, Transaction) == 0

        await fraud_services.dispatcher.drain()
        assert [e.type for e in delivered] == [EventType.FRAUD_ALERT]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fraud_services", [True], indirect=True)
    async def test_review_only_approves_and_records(self, fraud_services: Services, seed):
        account_id = await seed.account()
        card_id = await seed.card(account_id)

        result = await fraud_services.engine.authorize(swipe(card_id, merchant_name=self.BAD_MERCHANT))

        assert result.approved is True
        assert result.is_anomaly is True
        async with fraud_services.session_factory() as session:
            alerts = await LedgerRepository(session).get_account_fraud_alerts(account_id)
        assert len(alerts) == 1
        assert alerts[0].blocked is False
        assert alerts[0].transaction_id == result.transaction_id


class TestSendPipeline:
    """Ordered checks on the on-chain rail."""

    def send(self, account_id: int, wallet_id: int, amount: str = "25", **overrides) -> SendRequest:
        values = dict(
            account_id=account_id,
            wallet_id=wallet_id,
            chain="ethereum",
            signed_payload="0xf86c0a8502540be400",
            to_address="0x1111111111111111111111111111111111111111",
            amount_usd=Decimal(amount),
        )
        values.update(overrides)
        return SendRequest(**values)

    @pytest.mark.asyncio
    async def test_send_broadcasts_and_records_pending(self, services: Services, seed, account_id, delivered):
        wallet_id = await seed.wallet(account_id)

        result = await services.engine.authorize_send(self.send(account_id, wallet_id))

        assert result.approved is True
        assert result.tx_hash.startswith("0x")
        async with services.session_factory() as session:
            tx = await LedgerRepository(session).get_transaction_by_hash(result.tx_hash)
        assert tx.status == TransactionStatus.PENDING
        assert tx.kind == TransactionKind.ONCHAIN
        assert tx.chain == "ethereum"
        assert tx.wallet_id == wallet_id

        await services.dispatcher.drain()
        assert [e.type for e in delivered] == [EventType.SEND_SUBMITTED]

    @pytest.mark.asyncio
    async def test_same_payload_is_not_recorded_twice(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id)

        first = await services.engine.authorize_send(self.send(account_id, wallet_id))
        second = await services.engine.authorize_send(self.send(account_id, wallet_id))

        assert first.tx_hash == second.tx_hash
        assert await _count(services.session_factory, Transaction) == 1

    @pytest.mark.asyncio
    async def test_unsupported_chain(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id)

        result = await services.engine.authorize_send(self.send(account_id, wallet_id, chain="dogecoin"))

        assert result.reason_code == DeclineCode.UNSUPPORTED_CHAIN

    @pytest.mark.asyncio
    async def test_foreign_wallet(self, services: Services, seed, account_id):
        other = await seed.account()
        wallet_id = await seed.wallet(other)

        result = await services.engine.authorize_send(self.send(account_id, wallet_id))

        assert result.reason_code == DeclineCode.WALLET_NOT_FOUND

    @pytest.mark.asyncio
    async def test_daily_cap_spans_card_and_chain(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id)
        await seed.transaction(account_id, Decimal("950"))

        result = await services.engine.authorize_send(self.send(account_id, wallet_id, "100"))

        assert result.reason_code == DeclineCode.DAILY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_insufficient_wallet_balance(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id, balance_usd=Decimal("10"))

        result = await services.engine.authorize_send(self.send(account_id, wallet_id, "25"))

        assert result.reason_code == DeclineCode.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_rejected_broadcast(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id)

        result = await services.engine.authorize_send(self.send(account_id, wallet_id, signed_payload=""))

        assert result.reason_code == DeclineCode.BROADCAST_FAILED
        assert await _count(services.session_factory, Transaction) == 0

    @pytest.mark.asyncio
    async def test_failed_send_releases_daily_budget(self, services: Services, seed, account_id):
        wallet_id = await seed.wallet(account_id)
        await seed.transaction(
            account_id,
            Decimal("950"),
            status=TransactionStatus.FAILED,
            kind=TransactionKind.ONCHAIN,
            created_at=services.clock() - timedelta(minutes=30),
        )

        result = await services.engine.authorize_send(self.send(account_id, wallet_id, "100"))

        assert result.approved is True
