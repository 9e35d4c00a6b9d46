"""Decision engine for card swipes and on-chain sends.

Checks run in a fixed order and stop at the first failure, so the reason
code for a request that breaks several rules is deterministic. Any
exception during evaluation yields a SYSTEM_ERROR decline.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendguard.authorization.codes import DeclineCode, decline_message
from spendguard.chains.base import BroadcastError, ChainError, UnsupportedChainError
from spendguard.chains.registry import normalize_chain
from spendguard.clock import Clock, utc_day_bounds, utcnow
from spendguard.config import Settings
from spendguard.fraud.engine import FraudCheckRequest, FraudEngine, RiskVerdict
from spendguard.fraud.geo import check_geo_anomaly
from spendguard.ledger.models import (
    Account,
    Card,
    CardStatus,
    TransactionKind,
    TransactionStatus,
)
from spendguard.ledger.repository import LedgerRepository
from spendguard.limits.aggregator import LimitAggregator
from spendguard.notifications.dispatcher import NotificationDispatcher
from spendguard.notifications.events import EventType, NotificationEvent
from spendguard.rules import RuleSet
from spendguard.settlement.broadcast import BroadcastService
from spendguard.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class CardAuthorizationRequest:
    """A card network asking whether to approve a swipe."""

    instrument_id: int
    amount: Decimal
    currency: str = "USD"
    merchant_country: Optional[str] = None
    mcc: Optional[str] = None
    merchant_name: Optional[str] = None
    amount_usd: Optional[Decimal] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    client_ip: Optional[str] = None


@dataclass
class SendRequest:
    """A client-signed on-chain transfer to vet and broadcast."""

    account_id: int
    wallet_id: int
    chain: str
    signed_payload: str
    to_address: str
    amount_usd: Decimal


@dataclass
class AuthorizationResult:
    """Approve/decline verdict. Declines carry a reason code and message."""

    approved: bool
    reason_code: Optional[DeclineCode] = None
    message: str = ""
    transaction_id: Optional[int] = None
    cashback_amount: Optional[Decimal] = None
    is_anomaly: bool = False
    tx_hash: Optional[str] = None
    risk: Optional[RiskVerdict] = None

    @classmethod
    def decline(
        cls,
        code: DeclineCode,
        message: Optional[str] = None,
        risk: Optional[RiskVerdict] = None,
    ) -> "AuthorizationResult":
        return cls(
            approved=False,
            reason_code=code,
            message=message or decline_message(code),
            risk=risk,
        )

    @property
    def is_system_error(self) -> bool:
        return self.reason_code == DeclineCode.SYSTEM_ERROR


def _normalize_code(value: Optional[str]) -> Optional[str]:
    return value.strip().upper() if value else value


def restriction_decline(card: Card, mcc: Optional[str], country: Optional[str]) -> Optional[DeclineCode]:
    """Merchant-category then country restrictions. Block-lists win; empty allow-list admits all."""
    if mcc and mcc in (card.blocked_mcc or []):
        return DeclineCode.MERCHANT_CATEGORY_BLOCKED
    if card.allowed_mcc and mcc not in card.allowed_mcc:
        return DeclineCode.MERCHANT_CATEGORY_NOT_ALLOWED

    country = _normalize_code(country)
    blocked = [c.upper() for c in card.blocked_countries or []]
    allowed = [c.upper() for c in card.allowed_countries or []]
    if country and country in blocked:
        return DeclineCode.COUNTRY_BLOCKED
    if allowed and country not in allowed:
        return DeclineCode.COUNTRY_NOT_ALLOWED
    return None


def static_limit_decline(card: Card, amount_usd: Decimal) -> Optional[DeclineCode]:
    """Lifetime then monthly card limits."""
    if card.spending_limit is not None and card.total_spent + amount_usd > card.spending_limit:
        return DeclineCode.SPENDING_LIMIT_EXCEEDED
    if card.monthly_limit is not None and card.monthly_spent + amount_usd > card.monthly_limit:
        return DeclineCode.MONTHLY_LIMIT_EXCEEDED
    return None


class DecisionEngine:
    """Runs the ordered authorization pipeline.

    Reads and the spend reservation for one instrument run under a per-key
    lock, and the reservation itself is a single conditional write, so
    concurrent requests cannot jointly exceed a limit even across processes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        rules: RuleSet,
        fraud: FraudEngine,
        aggregator: LimitAggregator,
        broadcaster: Optional[BroadcastService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        locks: Optional[KeyedLock] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.rules = rules
        self.fraud = fraud
        self.aggregator = aggregator
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.locks = locks if locks is not None else KeyedLock(timeout=10.0)
        self.clock = clock

    def resolve_amount_usd(self, request: CardAuthorizationRequest) -> Optional[Decimal]:
        """USD value of the request, or None if the currency has no FX rate."""
        if request.amount_usd is not None:
            return request.amount_usd
        return self.rules.to_usd(request.amount, request.currency)

    async def card_account_id(self, card_id: int) -> Optional[int]:
        """Owner of a card, used to scope idempotency keys."""
        async with self.session_factory() as session:
            card = await LedgerRepository(session).get_card(card_id)
            return card.account_id if card else None

    # Card rail
    async def authorize(self, request: CardAuthorizationRequest) -> AuthorizationResult:
        """Decide a card swipe. Never raises."""
        try:
            async with self.locks.hold(("card", request.instrument_id), operation="authorize"):
                result = await self._authorize_card(request)
        except Exception as e:
            logger.error(f"Authorization failed for card {request.instrument_id}: {e}", exc_info=True)
            result = AuthorizationResult.decline(DeclineCode.SYSTEM_ERROR)

        if result.approved:
            logger.info(
                f"Approved card {request.instrument_id} amount={request.amount} {request.currency} "
                f"tx={result.transaction_id} anomaly={result.is_anomaly}"
            )
        else:
            logger.info(f"Declined card {request.instrument_id}: {result.reason_code.value}")
        return result

    async def _authorize_card(self, request: CardAuthorizationRequest) -> AuthorizationResult:
        now = self.clock()
        amount_usd = self.resolve_amount_usd(request)
        if amount_usd is None:
            raise ValueError(f"No FX rate for {request.currency}")

        async with self.session_factory() as session:
            repo = LedgerRepository(session)

            card = await repo.get_card(request.instrument_id)
            if card is None:
                return AuthorizationResult.decline(DeclineCode.CARD_NOT_FOUND)
            if card.status != CardStatus.ACTIVE:
                return AuthorizationResult.decline(
                    DeclineCode.CARD_INACTIVE, f"Card is {CardStatus(card.status).value}"
                )

            if card.is_disposable and card.last_used_at is not None:
                if await repo.cancel_card(card.id, now):
                    await repo.add_audit_log(
                        action="disposable_card_cancelled",
                        resource="card",
                        resource_id=str(card.id),
                        status="cancelled",
                        now=now,
                        account_id=card.account_id,
                    )
                await session.commit()
                logger.info(f"Disposable card {card.id} reused; cancelled")
                return AuthorizationResult.decline(DeclineCode.DISPOSABLE_CARD_USED)

            account = await repo.get_account(card.account_id)
            verdict = await self.fraud.evaluate(
                repo,
                FraudCheckRequest(
                    account_id=card.account_id,
                    amount_usd=amount_usd,
                    channel="card",
                    scope="card",
                    scope_id=card.id,
                    counterparty=request.merchant_name,
                    timezone=account.timezone if account else "UTC",
                ),
            )
            if verdict.is_suspicious and not self.settings.fraud_review_only:
                await repo.add_fraud_alert(
                    account_id=card.account_id,
                    channel="card",
                    amount_usd=amount_usd,
                    risk_score=verdict.risk_score,
                    level=verdict.level,
                    reasons=verdict.reasons,
                    blocked=True,
                    now=now,
                    card_id=card.id,
                    counterparty=request.merchant_name,
                )
                await session.commit()
                self._emit(account, card.account_id, EventType.FRAUD_ALERT, amount_usd, reasons=verdict.reasons)
                return AuthorizationResult.decline(
                    DeclineCode.FRAUD_DETECTED,
                    f"Transaction flagged as suspicious: {', '.join(verdict.reasons)}",
                    risk=verdict,
                )

            code = restriction_decline(card, request.mcc, request.merchant_country)
            if code is None:
                code = static_limit_decline(card, amount_usd)
            if code is not None:
                return AuthorizationResult.decline(code, risk=verdict)

            daily_limit = card.daily_limit if card.daily_limit is not None else self.settings.daily_limit_usd
            daily = await self.aggregator.check_daily(repo, "card", card.id, amount_usd, limit=daily_limit)
            if daily.error:
                return AuthorizationResult.decline(DeclineCode.SYSTEM_ERROR)
            if not daily.allowed:
                return AuthorizationResult.decline(DeclineCode.DAILY_LIMIT_EXCEEDED, risk=verdict)

            recent = await self.aggregator.velocity_count(repo, "card", card.id)
            if recent >= self.settings.velocity_max_transactions:
                return AuthorizationResult.decline(DeclineCode.VELOCITY_EXCEEDED, risk=verdict)

            wallet = card.wallet
            if wallet is not None and wallet.balance_usd is not None and wallet.balance_usd < amount_usd:
                return AuthorizationResult.decline(DeclineCode.INSUFFICIENT_FUNDS, risk=verdict)

            last = await repo.get_last_located_transaction(card.id)
            geo = check_geo_anomaly(
                request.latitude,
                request.longitude,
                last.latitude if last else None,
                last.longitude if last else None,
                last.created_at if last else None,
                now,
                max_distance_km=self.settings.geo_anomaly_distance_km,
                window_minutes=self.settings.geo_anomaly_window_minutes,
            )
            if geo.is_anomaly:
                logger.warning(
                    f"Geo anomaly on card {card.id}: {geo.distance_km:.0f} km "
                    f"in {geo.minutes_since_last:.0f} minutes"
                )

            high_risk = self.rules.is_high_risk_mcc(request.mcc)
            if high_risk:
                rate = Decimal("0")
            elif card.cashback_rate is not None:
                rate = card.cashback_rate
            else:
                rate = self.settings.default_cashback_rate
            cashback = (amount_usd * rate).quantize(CENT, rounding=ROUND_HALF_UP)
            is_anomaly = geo.is_anomaly or high_risk or verdict.is_suspicious

            day_start, day_end = utc_day_bounds(now)
            reserved = await repo.reserve_card_spend(
                card.id, amount_usd, daily_limit, day_start, day_end, now
            )
            if not reserved:
                await session.rollback()
                return await self._reservation_decline(repo, card.id, amount_usd, request)

            tx = await repo.create_transaction(
                account_id=card.account_id,
                kind=TransactionKind.CARD,
                amount=request.amount,
                amount_usd=amount_usd,
                now=now,
                status=TransactionStatus.APPROVED,
                currency=request.currency,
                card_id=card.id,
                wallet_id=card.wallet_id,
                counterparty=request.merchant_name,
                mcc=request.mcc,
                merchant_name=request.merchant_name,
                merchant_country=_normalize_code(request.merchant_country),
                latitude=request.latitude,
                longitude=request.longitude,
                cashback_amount=cashback,
                is_anomaly=is_anomaly,
            )
            if verdict.is_suspicious:
                await repo.add_fraud_alert(
                    account_id=card.account_id,
                    channel="card",
                    amount_usd=amount_usd,
                    risk_score=verdict.risk_score,
                    level=verdict.level,
                    reasons=verdict.reasons,
                    blocked=False,
                    now=now,
                    transaction_id=tx.id,
                    card_id=card.id,
                    counterparty=request.merchant_name,
                )
            await session.commit()

        self._emit(
            account,
            card.account_id,
            EventType.CARD_APPROVED,
            amount_usd,
            merchant=request.merchant_name,
            mcc=request.mcc,
            cashback=str(cashback),
            is_anomaly=is_anomaly,
        )
        return AuthorizationResult(
            approved=True,
            message="Approved",
            transaction_id=tx.id,
            cashback_amount=cashback,
            is_anomaly=is_anomaly,
            risk=verdict,
        )

    async def _reservation_decline(
        self,
        repo: LedgerRepository,
        card_id: int,
        amount_usd: Decimal,
        request: CardAuthorizationRequest,
    ) -> AuthorizationResult:
        """The conditional reservation lost to a concurrent writer; report which limit."""
        card = await repo.get_card(card_id)
        await repo.session.refresh(card)
        if card.status != CardStatus.ACTIVE:
            return AuthorizationResult.decline(DeclineCode.CARD_INACTIVE)
        if card.is_disposable and card.last_used_at is not None:
            return AuthorizationResult.decline(DeclineCode.DISPOSABLE_CARD_USED)
        code = static_limit_decline(card, amount_usd) or DeclineCode.DAILY_LIMIT_EXCEEDED
        logger.warning(f"Spend reservation for card {card_id} rejected: {code.value}")
        return AuthorizationResult.decline(code)

    # On-chain rail
    async def authorize_send(self, request: SendRequest) -> AuthorizationResult:
        """Vet an on-chain send and broadcast it if approved. Never raises."""
        try:
            async with self.locks.hold(("account", request.account_id), operation="send"):
                result = await self._authorize_send(request)
        except UnsupportedChainError:
            result = AuthorizationResult.decline(DeclineCode.UNSUPPORTED_CHAIN)
        except BroadcastError as e:
            logger.warning(f"Broadcast rejected for account {request.account_id}: {e}")
            result = AuthorizationResult.decline(DeclineCode.BROADCAST_FAILED)
        except ChainError as e:
            logger.error(f"Chain unavailable for account {request.account_id}: {e}")
            result = AuthorizationResult.decline(DeclineCode.SYSTEM_ERROR)
        except Exception as e:
            logger.error(f"Send authorization failed for account {request.account_id}: {e}", exc_info=True)
            result = AuthorizationResult.decline(DeclineCode.SYSTEM_ERROR)

        if result.approved:
            logger.info(f"Approved send for account {request.account_id}: {result.tx_hash}")
        else:
            logger.info(f"Declined send for account {request.account_id}: {result.reason_code.value}")
        return result

    async def _authorize_send(self, request: SendRequest) -> AuthorizationResult:
        if self.broadcaster is None:
            raise RuntimeError("No broadcast service configured")

        now = self.clock()
        chain = normalize_chain(request.chain)
        if not self.broadcaster.registry.supports(chain):
            return AuthorizationResult.decline(DeclineCode.UNSUPPORTED_CHAIN)

        async with self.session_factory() as session:
            repo = LedgerRepository(session)

            wallet = await repo.get_wallet(request.wallet_id)
            if wallet is None or wallet.account_id != request.account_id:
                return AuthorizationResult.decline(DeclineCode.WALLET_NOT_FOUND)

            account = await repo.get_account(request.account_id)
            verdict = await self.fraud.evaluate(
                repo,
                FraudCheckRequest(
                    account_id=request.account_id,
                    amount_usd=request.amount_usd,
                    channel="onchain",
                    scope="wallet",
                    scope_id=wallet.id,
                    counterparty=request.to_address,
                    timezone=account.timezone if account else "UTC",
                ),
            )
            if verdict.is_suspicious and not self.settings.fraud_review_only:
                await repo.add_fraud_alert(
                    account_id=request.account_id,
                    channel="onchain",
                    amount_usd=request.amount_usd,
                    risk_score=verdict.risk_score,
                    level=verdict.level,
                    reasons=verdict.reasons,
                    blocked=True,
                    now=now,
                    wallet_id=wallet.id,
                    counterparty=request.to_address,
                )
                await session.commit()
                self._emit(
                    account, request.account_id, EventType.FRAUD_ALERT, request.amount_usd,
                    reasons=verdict.reasons,
                )
                return AuthorizationResult.decline(
                    DeclineCode.FRAUD_DETECTED,
                    f"Transaction flagged as suspicious: {', '.join(verdict.reasons)}",
                    risk=verdict,
                )

            daily = await self.aggregator.check_daily(
                repo, "account", request.account_id, request.amount_usd
            )
            if daily.error:
                return AuthorizationResult.decline(DeclineCode.SYSTEM_ERROR)
            if not daily.allowed:
                return AuthorizationResult.decline(DeclineCode.DAILY_LIMIT_EXCEEDED, risk=verdict)

            recent = await self.aggregator.velocity_count(repo, "wallet", wallet.id)
            if recent >= self.settings.velocity_max_transactions:
                return AuthorizationResult.decline(DeclineCode.VELOCITY_EXCEEDED, risk=verdict)

            if wallet.balance_usd is not None and wallet.balance_usd < request.amount_usd:
                return AuthorizationResult.decline(DeclineCode.INSUFFICIENT_FUNDS, risk=verdict)

        reservation_id = await self._reserve_send(request, chain, now)
        if reservation_id is None:
            async with self.session_factory() as session:
                daily = await self.aggregator.check_daily(
                    LedgerRepository(session), "account", request.account_id, request.amount_usd
                )
            if daily.error:
                return AuthorizationResult.decline(DeclineCode.SYSTEM_ERROR)
            code = DeclineCode.VELOCITY_EXCEEDED if daily.allowed else DeclineCode.DAILY_LIMIT_EXCEEDED
            logger.warning(f"Send reservation for account {request.account_id} rejected: {code.value}")
            return AuthorizationResult.decline(code, risk=verdict)

        submitted = await self.broadcaster.submit(chain, request.signed_payload, reservation_id)

        if verdict.is_suspicious and not submitted.duplicate:
            async with self.session_factory() as session:
                await LedgerRepository(session).add_fraud_alert(
                    account_id=request.account_id,
                    channel="onchain",
                    amount_usd=request.amount_usd,
                    risk_score=verdict.risk_score,
                    level=verdict.level,
                    reasons=verdict.reasons,
                    blocked=False,
                    now=now,
                    transaction_id=submitted.transaction_id,
                    wallet_id=request.wallet_id,
                    counterparty=request.to_address,
                )
                await session.commit()

        self._emit(
            account,
            request.account_id,
            EventType.SEND_SUBMITTED,
            request.amount_usd,
            chain=chain,
            tx_hash=submitted.tx_hash,
        )
        return AuthorizationResult(
            approved=True,
            message="Transaction submitted" if not submitted.duplicate else "Transaction already submitted",
            transaction_id=submitted.transaction_id,
            tx_hash=submitted.tx_hash,
            is_anomaly=verdict.is_suspicious,
            risk=verdict,
        )

    async def _reserve_send(self, request: SendRequest, chain: str, now: datetime) -> Optional[int]:
        """Claim daily and velocity budget for a send in one conditional insert."""
        day_start, day_end = utc_day_bounds(now)
        async with self.session_factory() as session:
            reservation_id = await LedgerRepository(session).reserve_onchain_spend(
                account_id=request.account_id,
                wallet_id=request.wallet_id,
                chain=chain,
                amount_usd=request.amount_usd,
                daily_limit=self.settings.daily_limit_usd,
                day_start=day_start,
                day_end=day_end,
                velocity_since=now - timedelta(minutes=self.settings.velocity_window_minutes),
                velocity_max=self.settings.velocity_max_transactions,
                now=now,
                counterparty=request.to_address,
            )
            await session.commit()
        return reservation_id

    def _emit(
        self,
        account: Optional[Account],
        account_id: int,
        event_type: EventType,
        amount_usd: Decimal,
        **details,
    ) -> None:
        """Queue a notification; never raises."""
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.notify(
                NotificationEvent(
                    account_id=account_id,
                    type=event_type,
                    amount_usd=amount_usd,
                    telegram_id=account.telegram_id if account else None,
                    details=details,
                )
            )
        except Exception as e:
            logger.error(f"Failed to queue {event_type.value} notification: {e}")
