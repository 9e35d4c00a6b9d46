"""Ledger module for cards, wallets and transaction tracking."""

from spendguard.ledger.database import init_db
from spendguard.ledger.models import (
    Account,
    AuditLog,
    Card,
    CardStatus,
    FraudAlert,
    IdempotencyRecord,
    RiskLevel,
    Transaction,
    TransactionKind,
    TransactionStatus,
    Wallet,
)
from spendguard.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "Account",
    "AuditLog",
    "Card",
    "FraudAlert",
    "IdempotencyRecord",
    "Transaction",
    "Wallet",
    # Enums
    "CardStatus",
    "RiskLevel",
    "TransactionKind",
    "TransactionStatus",
    # Database
    "init_db",
    "LedgerRepository",
]
