"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "true"
os.environ["DRY_RUN"] = "true"
os.environ["RECONCILER_ENABLED"] = "false"
os.environ["CARD_WEBHOOK_SECRETS"] = "highnote:test-secret"

from spendguard.chains.base import ChainClient, ChainError, ChainTxStatus
from spendguard.config import Settings
from spendguard.ledger.database import create_session_factory
from spendguard.ledger.models import Base, TransactionKind, TransactionStatus
from spendguard.ledger.repository import LedgerRepository
from spendguard.notifications.events import NotificationEvent
from spendguard.services import Services

WEBHOOK_SECRET = "test-secret"

# Midday UTC, so the night-time fraud rule stays quiet unless a test moves the clock
NOON = datetime(2026, 3, 10, 12, 0, 0)


class FixedClock:
    """Controllable clock returning naive UTC datetimes."""

    def __init__(self, now: datetime = NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChainClient(ChainClient):
    """Chain client whose answers are scripted per transaction hash."""

    def __init__(self, chain: str = "ethereum"):
        super().__init__(chain)
        self.statuses: dict[str, ChainTxStatus | Exception] = {}
        self.queries: list[str] = []
        self.broadcasts: list[str] = []

    async def broadcast(self, signed_payload: str) -> str:
        self.broadcasts.append(signed_payload)
        return f"0x{len(self.broadcasts):064x}"

    async def query_status(self, tx_hash: str) -> ChainTxStatus:
        self.queries.append(tx_hash)
        answer = self.statuses.get(tx_hash, ChainTxStatus(status=TransactionStatus.PENDING))
        if isinstance(answer, Exception):
            raise answer
        return answer

    def fail_with(self, tx_hash: str, message: str = "node unavailable") -> None:
        self.statuses[tx_hash] = ChainError(message)


def make_settings(**overrides) -> Settings:
    """Settings for tests, independent of any .env file."""
    values = dict(
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        dry_run=True,
        telegram_bot_token="",
        card_webhook_secrets=f"highnote:{WEBHOOK_SECRET}",
        card_webhook_ips="",
        admin_token="",
        reconciler_enabled=False,
        daily_limit_usd=Decimal("1000"),
        velocity_window_minutes=10,
        velocity_max_transactions=5,
        default_cashback_rate=Decimal("0.02"),
        reconcile_timeout_minutes=60,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed engine so concurrent sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'spendguard.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(file_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(file_engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def delivered() -> list[NotificationEvent]:
    """Events handed to the test notification sink."""
    return []


@pytest_asyncio.fixture
async def services(settings, session_factory, clock, delivered) -> AsyncGenerator[Services, None]:
    """Fully wired services on a file database with simulated chains."""

    async def collect(event: NotificationEvent) -> None:
        delivered.append(event)

    built = Services.build(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        sinks=[collect],
    )
    yield built
    await built.aclose()


class Seeder:
    """Creates accounts, wallets, cards and history rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: FixedClock):
        self.session_factory = session_factory
        self.clock = clock
        self._accounts = 0

    async def account(self, timezone: str = "UTC", telegram_id: Optional[int] = None) -> int:
        self._accounts += 1
        async with self.session_factory() as session:
            account = await LedgerRepository(session).create_account(
                f"acct-{self._accounts}", telegram_id=telegram_id, timezone=timezone
            )
            await session.commit()
            return account.id

    async def wallet(
        self,
        account_id: int,
        chain: str = "ethereum",
        balance_usd: Optional[Decimal] = None,
        address: Optional[str] = None,
    ) -> int:
        async with self.session_factory() as session:
            wallet = await LedgerRepository(session).create_wallet(
                account_id,
                chain,
                address or f"0x{account_id:040x}",
                balance_usd,
            )
            await session.commit()
            return wallet.id

    async def card(self, account_id: int, **fields) -> int:
        for name in ("allowed_mcc", "blocked_mcc", "allowed_countries", "blocked_countries"):
            fields.setdefault(name, [])
        async with self.session_factory() as session:
            card = await LedgerRepository(session).create_card(account_id, **fields)
            await session.commit()
            return card.id

    async def transaction(
        self,
        account_id: int,
        amount_usd: Decimal,
        status: TransactionStatus = TransactionStatus.APPROVED,
        kind: TransactionKind = TransactionKind.CARD,
        created_at: Optional[datetime] = None,
        **fields,
    ) -> int:
        async with self.session_factory() as session:
            tx = await LedgerRepository(session).create_transaction(
                account_id=account_id,
                kind=kind,
                amount=amount_usd,
                amount_usd=amount_usd,
                now=self.clock(),
                status=status,
                created_at=created_at or self.clock(),
                **fields,
            )
            await session.commit()
            return tx.id


@pytest.fixture
def seed(session_factory, clock) -> Seeder:
    return Seeder(session_factory, clock)
