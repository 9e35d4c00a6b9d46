"""SQLAlchemy models for the ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class CardStatus(str, Enum):
    """Status of a payment card."""

    ACTIVE = "active"
    FROZEN = "frozen"
    CANCELLED = "cancelled"


class TransactionKind(str, Enum):
    """Rail a ledger entry settled on."""

    CARD = "card"
    ONCHAIN = "onchain"


class TransactionStatus(str, Enum):
    """Status of a ledger entry.

    Card spends settle synchronously as ``approved``. On-chain sends start
    ``pending`` and move one way to ``confirmed`` or ``failed``.
    """

    PENDING = "pending"
    APPROVED = "approved"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses that consume spend budget (everything except failed)
SPEND_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.APPROVED,
    TransactionStatus.CONFIRMED,
    TransactionStatus.COMPLETED,
)

# Statuses that represent settled history for pattern analysis
SETTLED_STATUSES = (
    TransactionStatus.APPROVED,
    TransactionStatus.CONFIRMED,
    TransactionStatus.COMPLETED,
)

# Tuples, not sets: rows loaded from the database hold plain strings
TERMINAL_STATUSES = (
    TransactionStatus.APPROVED,
    TransactionStatus.CONFIRMED,
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
)


class RiskLevel(str, Enum):
    """Fraud verdict level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Account(Base):
    """A user's identity with linked cards and wallets."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    cards: Mapped[list["Card"]] = relationship(back_populates="account", lazy="selectin")
    wallets: Mapped[list["Wallet"]] = relationship(back_populates="account", lazy="selectin")


class Wallet(Base):
    """On-chain address with an advisory cached balance."""

    __tablename__ = "wallets"
    __table_args__ = (Index("ix_wallets_chain_address", "chain", "address", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    # Refreshed out-of-band; may be stale
    balance_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    balance_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="wallets")


class Card(Base):
    """Payment card with spend counters, limits and restriction lists."""

    __tablename__ = "cards"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"), nullable=True)
    status: Mapped[CardStatus] = mapped_column(
        String(20), default=CardStatus.ACTIVE, nullable=False
    )
    is_disposable: Mapped[bool] = mapped_column(default=False)

    # Counters (written only by the decision engine, or an explicit reset)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    monthly_spent: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))

    # Limits (None = unlimited; daily falls back to the account-wide cap)
    spending_limit: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    daily_limit: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    monthly_limit: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)

    # Restrictions (empty allow-list = unrestricted; block-list wins)
    allowed_mcc: Mapped[list[str]] = mapped_column(JSON, default=list)
    blocked_mcc: Mapped[list[str]] = mapped_column(JSON, default=list)
    allowed_countries: Mapped[list[str]] = mapped_column(JSON, default=list)
    blocked_countries: Mapped[list[str]] = mapped_column(JSON, default=list)

    cashback_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 6), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    account: Mapped["Account"] = relationship(back_populates="cards")
    wallet: Mapped[Optional["Wallet"]] = relationship(lazy="selectin")


class Transaction(Base):
    """Ledger entry for a card spend or an on-chain send.

    Immutable once written except for the settlement fields
    (status, confirmations, block_number, confirmed_at).
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_card_created", "card_id", "created_at"),
        Index("ix_transactions_wallet_created", "wallet_id", "created_at"),
        Index("ix_transactions_account_created", "account_id", "created_at"),
        Index("ix_transactions_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cards.id"), nullable=True)
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"), nullable=True)
    kind: Mapped[TransactionKind] = mapped_column(String(20), nullable=False)
    chain: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    counterparty: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Card merchant details
    mcc: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    merchant_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(nullable=True)

    # Settlement
    status: Mapped[TransactionStatus] = mapped_column(
        String(20), default=TransactionStatus.PENDING, nullable=False
    )
    confirmations: Mapped[int] = mapped_column(default=0)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    cashback_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    is_anomaly: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class FraudAlert(Base):
    """Append-only risk annotation on a transaction or a declined attempt."""

    __tablename__ = "fraud_alerts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id"), nullable=True
    )
    card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cards.id"), nullable=True)
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"), nullable=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    counterparty: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    risk_score: Mapped[int] = mapped_column(nullable=False)
    level: Mapped[RiskLevel] = mapped_column(String(20), nullable=False)
    reasons: Mapped[list[str]] = mapped_column(JSON, default=list)
    blocked: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class IdempotencyRecord(Base):
    """Stored response for a mutating request, scoped per account."""

    __tablename__ = "idempotency_records"
    __table_args__ = (
        Index("ix_idempotency_key_account", "key", "account_id", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(100), nullable=False)
    status_code: Mapped[int] = mapped_column(default=200)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class AuditLog(Base):
    """Audit trail for system-initiated state changes."""

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_resource", "resource", "resource_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
