"""Service container.

Builds every long-lived collaborator once and hands them out explicitly,
so tests can substitute fakes (a chain client, a clock, a session factory)
per run instead of patching module globals.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendguard.authorization.engine import DecisionEngine
from spendguard.authorization.verifier import WebhookVerifier
from spendguard.chains.registry import ChainRegistry
from spendguard.clock import Clock, utcnow
from spendguard.config import Settings, get_settings
from spendguard.fraud.engine import FraudEngine
from spendguard.idempotency.guard import IdempotencyGuard
from spendguard.ledger.database import get_session_factory
from spendguard.limits.aggregator import LimitAggregator
from spendguard.notifications.dispatcher import NotificationDispatcher, Sink, log_sink
from spendguard.notifications.telegram import TelegramNotifier
from spendguard.rules import RuleSet, load_rules
from spendguard.settlement.broadcast import BroadcastService
from spendguard.settlement.reconciler import Reconciler
from spendguard.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Wired application services."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    clock: Clock
    rules: RuleSet
    registry: ChainRegistry
    dispatcher: NotificationDispatcher
    aggregator: LimitAggregator
    fraud: FraudEngine
    broadcaster: BroadcastService
    engine: DecisionEngine
    idempotency: IdempotencyGuard
    reconciler: Reconciler
    verifier: WebhookVerifier
    telegram: Optional[TelegramNotifier] = None

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[ChainRegistry] = None,
        rules: Optional[RuleSet] = None,
        clock: Clock = utcnow,
        sinks: Optional[list[Sink]] = None,
    ) -> "Services":
        settings = settings or get_settings()
        session_factory = session_factory or get_session_factory()
        rules = rules or load_rules(settings)
        registry = registry or ChainRegistry.from_settings(settings)

        telegram = None
        if sinks is None:
            sinks = [log_sink]
            telegram = TelegramNotifier.from_token(settings.telegram_bot_token)
            if telegram is not None:
                sinks.append(telegram)
        dispatcher = NotificationDispatcher(sinks, max_queue_size=settings.notification_queue_size)

        aggregator = LimitAggregator(settings, clock=clock)
        fraud = FraudEngine(settings, rules, clock=clock)
        broadcaster = BroadcastService(session_factory, registry, clock=clock)
        locks = KeyedLock(timeout=10.0)

        engine = DecisionEngine(
            session_factory,
            settings,
            rules,
            fraud,
            aggregator,
            broadcaster=broadcaster,
            dispatcher=dispatcher,
            locks=locks,
            clock=clock,
        )
        idempotency = IdempotencyGuard(
            session_factory,
            ttl=timedelta(hours=settings.idempotency_ttl_hours),
            clock=clock,
            locks=locks,
        )
        reconciler = Reconciler(session_factory, registry, settings, dispatcher=dispatcher, clock=clock)

        logger.info(
            f"Services ready: chains={registry.chains} dry_run={settings.dry_run} "
            f"review_only={settings.fraud_review_only}"
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            clock=clock,
            rules=rules,
            registry=registry,
            dispatcher=dispatcher,
            aggregator=aggregator,
            fraud=fraud,
            broadcaster=broadcaster,
            engine=engine,
            idempotency=idempotency,
            reconciler=reconciler,
            verifier=WebhookVerifier.from_settings(settings),
            telegram=telegram,
        )

    async def aclose(self) -> None:
        """Release network resources."""
        await self.dispatcher.stop()
        await self.registry.aclose()
        if self.telegram is not None:
            await self.telegram.close()
