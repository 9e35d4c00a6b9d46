"""Repository for ledger operations."""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import delete, func, insert, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from spendguard.ledger.models import (
    SETTLED_STATUSES,
    SPEND_STATUSES,
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

# Card fields an explicit user/admin action may change
CARD_CONTROL_FIELDS = frozenset(
    {
        "spending_limit",
        "daily_limit",
        "monthly_limit",
        "allowed_mcc",
        "blocked_mcc",
        "allowed_countries",
        "blocked_countries",
        "cashback_rate",
    }
)

SCOPE_COLUMNS: dict[str, InstrumentedAttribute] = {
    "account": Transaction.account_id,
    "card": Transaction.card_id,
    "wallet": Transaction.wallet_id,
}


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Account operations
    async def create_account(
        self,
        external_id: str,
        telegram_id: Optional[int] = None,
        timezone: str = "UTC",
    ) -> Account:
        """Create an account."""
        account = Account(external_id=external_id, telegram_id=telegram_id, timezone=timezone)
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_account(self, account_id: int) -> Optional[Account]:
        """Get account by internal ID."""
        stmt = select(Account).where(Account.id == account_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_account_by_external_id(self, external_id: str) -> Optional[Account]:
        """Get account by the identity service's ID."""
        stmt = select(Account).where(Account.external_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Wallet operations
    async def create_wallet(
        self,
        account_id: int,
        chain: str,
        address: str,
        balance_usd: Optional[Decimal] = None,
    ) -> Wallet:
        """Link an on-chain address to an account."""
        wallet = Wallet(
            account_id=account_id,
            chain=chain.lower(),
            address=address,
            balance_usd=balance_usd,
        )
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    async def get_wallet(self, wallet_id: int) -> Optional[Wallet]:
        """Get wallet by ID."""
        stmt = select(Wallet).where(Wallet.id == wallet_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_wallet_balance(
        self, wallet_id: int, balance_usd: Decimal, now: datetime
    ) -> Optional[Wallet]:
        """Refresh the advisory balance cache."""
        wallet = await self.get_wallet(wallet_id)
        if wallet is None:
            return None
        wallet.balance_usd = balance_usd
        wallet.balance_updated_at = now
        await self.session.flush()
        return wallet

    # Card operations
    async def create_card(self, account_id: int, **fields: Any) -> Card:
        """Issue a card for an account."""
        card = Card(account_id=account_id, **fields)
        self.session.add(card)
        await self.session.flush()
        return card

    async def get_card(self, card_id: int) -> Optional[Card]:
        """Get card by ID."""
        stmt = select(Card).where(Card.id == card_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_card_controls(self, card_id: int, **changes: Any) -> Card:
        """Apply limit/restriction changes. Raises ValueError on unknown fields."""
        unknown = set(changes) - CARD_CONTROL_FIELDS
        if unknown:
            raise ValueError(f"Unknown card control fields: {sorted(unknown)}")

        card = await self.get_card(card_id)
        if card is None:
            raise ValueError(f"Card {card_id} not found")

        for name, value in changes.items():
            setattr(card, name, value)
        await self.session.flush()
        return card

    async def set_card_status(self, card_id: int, status: CardStatus, now: datetime) -> Card:
        """Change card status. Cancelled cards cannot be reactivated."""
        card = await self.get_card(card_id)
        if card is None:
            raise ValueError(f"Card {card_id} not found")

        if card.status == CardStatus.CANCELLED and status != CardStatus.CANCELLED:
            raise ValueError(f"Card {card_id} is cancelled")

        card.status = status
        if status == CardStatus.CANCELLED and card.cancelled_at is None:
            card.cancelled_at = now
        await self.session.flush()
        return card

    async def cancel_card(self, card_id: int, now: datetime) -> bool:
        """Cancel a card unless already cancelled. Returns True if this call cancelled it."""
        stmt = (
            update(Card)
            .where(Card.id == card_id, Card.status != CardStatus.CANCELLED)
            .values(status=CardStatus.CANCELLED, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reset_monthly_spend(self, card_id: int) -> Card:
        """Explicit reset of the monthly counter."""
        card = await self.get_card(card_id)
        if card is None:
            raise ValueError(f"Card {card_id} not found")
        card.monthly_spent = Decimal("0")
        await self.session.flush()
        return card

    async def reserve_card_spend(
        self,
        card_id: int,
        amount_usd: Decimal,
        daily_limit: Decimal,
        day_start: datetime,
        day_end: datetime,
        now: datetime,
    ) -> bool:
        """Atomically increment the card's spend counters if every limit still holds.

        The daily total is recomputed from ledger rows inside the same
        statement, so two concurrent reservations cannot both pass on a
        stale read. Returns False when any condition fails.
        """
        spent_today = (
            select(func.coalesce(func.sum(Transaction.amount_usd), 0))
            .where(
                Transaction.card_id == card_id,
                Transaction.status.in_(SPEND_STATUSES),
                Transaction.created_at >= day_start,
                Transaction.created_at < day_end,
            )
            .scalar_subquery()
        )
        stmt = (
            update(Card)
            .where(
                Card.id == card_id,
                Card.status == CardStatus.ACTIVE,
                or_(Card.is_disposable.is_(False), Card.last_used_at.is_(None)),
                or_(
                    Card.spending_limit.is_(None),
                    Card.total_spent + amount_usd <= Card.spending_limit,
                ),
                or_(
                    Card.monthly_limit.is_(None),
                    Card.monthly_spent + amount_usd <= Card.monthly_limit,
                ),
                spent_today + amount_usd <= daily_limit,
            )
            .values(
                total_spent=Card.total_spent + amount_usd,
                monthly_spent=Card.monthly_spent + amount_usd,
                last_used_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reserve_onchain_spend(
        self,
        account_id: int,
        wallet_id: int,
        chain: str,
        amount_usd: Decimal,
        daily_limit: Decimal,
        day_start: datetime,
        day_end: datetime,
        velocity_since: datetime,
        velocity_max: int,
        now: datetime,
        counterparty: Optional[str] = None,
    ) -> Optional[int]:
        """Insert a pending on-chain entry (no hash yet) if the caps still hold.

        The account's daily total and the wallet's velocity count are
        evaluated inside the same ``INSERT ... SELECT``, so two writers
        cannot both pass on a stale read. Returns the new entry's ID, or
        None when either cap is reached.
        """
        spent_today = (
            select(func.coalesce(func.sum(Transaction.amount_usd), 0))
            .where(
                Transaction.account_id == account_id,
                Transaction.status.in_(SPEND_STATUSES),
                Transaction.created_at >= day_start,
                Transaction.created_at < day_end,
            )
            .scalar_subquery()
        )
        recent = (
            select(func.count(Transaction.id))
            .where(
                Transaction.wallet_id == wallet_id,
                Transaction.status.in_(SPEND_STATUSES),
                Transaction.created_at >= velocity_since,
            )
            .scalar_subquery()
        )

        row = {
            "account_id": account_id,
            "wallet_id": wallet_id,
            "kind": TransactionKind.ONCHAIN.value,
            "chain": chain,
            "amount": amount_usd,
            "currency": "USD",
            "amount_usd": amount_usd,
            "counterparty": counterparty,
            "status": TransactionStatus.PENDING.value,
            "confirmations": 0,
            "cashback_amount": Decimal("0"),
            "is_anomaly": False,
            "created_at": now,
            "updated_at": now,
        }
        columns = Transaction.__table__.c
        source = select(
            *(literal(value, columns[name].type) for name, value in row.items())
        ).where(
            spent_today + amount_usd <= daily_limit,
            recent < velocity_max,
        )
        stmt = insert(Transaction).from_select(list(row), source).returning(Transaction.id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def attach_tx_hash(self, transaction_id: int, tx_hash: str, now: datetime) -> bool:
        """Record the chain hash on a reserved entry. Returns True if the row changed."""
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.tx_hash.is_(None))
            .values(tx_hash=tx_hash, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_reservation(self, transaction_id: int) -> bool:
        """Drop a reserved entry that never reached the chain."""
        stmt = (
            delete(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.tx_hash.is_(None),
                Transaction.status == TransactionStatus.PENDING,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # Transaction operations
    async def create_transaction(
        self,
        account_id: int,
        kind: TransactionKind,
        amount: Decimal,
        amount_usd: Decimal,
        now: datetime,
        status: TransactionStatus = TransactionStatus.PENDING,
        currency: str = "USD",
        **fields: Any,
    ) -> Transaction:
        """Write a new ledger entry."""
        tx = Transaction(
            account_id=account_id,
            kind=kind,
            amount=amount,
            amount_usd=amount_usd,
            currency=currency.upper(),
            status=status,
            created_at=fields.pop("created_at", now),
            updated_at=now,
            **fields,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        """Get a ledger entry by ID."""
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction_by_hash(self, tx_hash: str) -> Optional[Transaction]:
        """Get a ledger entry by chain transaction hash."""
        stmt = select(Transaction).where(Transaction.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_pending_onchain(self, limit: int = 100) -> list[Transaction]:
        """Oldest pending on-chain entries first (for reconciliation)."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING,
                Transaction.kind == TransactionKind.ONCHAIN,
                Transaction.tx_hash.is_not(None),
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def apply_settlement(
        self,
        tx_hash: str,
        status: TransactionStatus,
        confirmations: int,
        block_number: Optional[int],
        now: datetime,
    ) -> bool:
        """Write chain-observed settlement state.

        Only pending rows are updated, and only with a confirmation count at
        least as high as the stored one, so a stale observation can never
        overwrite a newer one. Returns True if the row changed.
        """
        values: dict[str, Any] = {
            "status": status,
            "confirmations": confirmations,
            "updated_at": now,
        }
        if block_number is not None:
            values["block_number"] = block_number
        if status == TransactionStatus.CONFIRMED:
            values["confirmed_at"] = now

        stmt = (
            update(Transaction)
            .where(
                Transaction.tx_hash == tx_hash,
                Transaction.status == TransactionStatus.PENDING,
                Transaction.confirmations <= confirmations,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def fail_pending_transaction(self, tx_hash: str, now: datetime) -> bool:
        """Mark a still-pending entry failed. Returns True if this call failed it."""
        stmt = (
            update(Transaction)
            .where(
                Transaction.tx_hash == tx_hash,
                Transaction.status == TransactionStatus.PENDING,
            )
            .values(status=TransactionStatus.FAILED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_transaction_counts(self) -> dict[str, int]:
        """Count entries per status."""
        stmt = select(Transaction.status, func.count(Transaction.id)).group_by(Transaction.status)
        result = await self.session.execute(stmt)
        return {str(getattr(status, "value", status)): count for status, count in result.all()}

    # Aggregations for limits and fraud patterns
    async def sum_spend(
        self,
        scope: str,
        scope_id: int,
        start: datetime,
        end: datetime,
        statuses: tuple = SPEND_STATUSES,
    ) -> Decimal:
        """Sum USD amounts in ``[start, end)`` for an account, card or wallet."""
        column = SCOPE_COLUMNS[scope]
        stmt = select(func.coalesce(func.sum(Transaction.amount_usd), 0)).where(
            column == scope_id,
            Transaction.status.in_(statuses),
            Transaction.created_at >= start,
            Transaction.created_at < end,
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar() or 0))

    async def count_spend_since(self, scope: str, scope_id: int, since: datetime) -> int:
        """Count non-failed entries created at or after ``since``."""
        column = SCOPE_COLUMNS[scope]
        stmt = select(func.count(Transaction.id)).where(
            column == scope_id,
            Transaction.status.in_(SPEND_STATUSES),
            Transaction.created_at >= since,
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def get_average_amount(self, account_id: int, since: datetime) -> Decimal:
        """Average settled USD amount for an account since ``since``."""
        stmt = select(func.avg(Transaction.amount_usd)).where(
            Transaction.account_id == account_id,
            Transaction.status.in_(SETTLED_STATUSES),
            Transaction.created_at >= since,
        )
        result = await self.session.execute(stmt)
        value = result.scalar()
        return Decimal(str(value)) if value is not None else Decimal("0")

    async def count_counterparty(self, account_id: int, counterparty: str) -> int:
        """How many settled entries this account has with a counterparty."""
        stmt = select(func.count(Transaction.id)).where(
            Transaction.account_id == account_id,
            Transaction.status.in_(SETTLED_STATUSES),
            func.lower(Transaction.counterparty) == counterparty.lower(),
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def get_recent_timestamps(
        self, account_id: int, since: datetime, limit: int = 200
    ) -> list[datetime]:
        """Creation times of the account's latest settled entries."""
        stmt = (
            select(Transaction.created_at)
            .where(
                Transaction.account_id == account_id,
                Transaction.status.in_(SETTLED_STATUSES),
                Transaction.created_at >= since,
            )
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_last_located_transaction(self, card_id: int) -> Optional[Transaction]:
        """Latest settled card entry that carries coordinates."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.card_id == card_id,
                Transaction.status.in_(SETTLED_STATUSES),
                Transaction.latitude.is_not(None),
                Transaction.longitude.is_not(None),
            )
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Fraud alerts
    async def add_fraud_alert(
        self,
        account_id: int,
        channel: str,
        amount_usd: Decimal,
        risk_score: int,
        level: RiskLevel,
        reasons: list[str],
        blocked: bool,
        now: datetime,
        transaction_id: Optional[int] = None,
        card_id: Optional[int] = None,
        wallet_id: Optional[int] = None,
        counterparty: Optional[str] = None,
    ) -> FraudAlert:
        """Append a fraud alert."""
        alert = FraudAlert(
            account_id=account_id,
            transaction_id=transaction_id,
            card_id=card_id,
            wallet_id=wallet_id,
            channel=channel,
            amount_usd=amount_usd,
            counterparty=counterparty,
            risk_score=risk_score,
            level=level,
            reasons=list(reasons),
            blocked=blocked,
            created_at=now,
        )
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def get_account_fraud_alerts(self, account_id: int, limit: int = 50) -> list[FraudAlert]:
        """Latest fraud alerts for an account."""
        stmt = (
            select(FraudAlert)
            .where(FraudAlert.account_id == account_id)
            .order_by(FraudAlert.created_at.desc(), FraudAlert.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Audit Log operations
    async def add_audit_log(
        self,
        action: str,
        resource: str,
        resource_id: str,
        status: str,
        now: datetime,
        account_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> AuditLog:
        """Add an audit log entry."""
        audit = AuditLog(
            account_id=account_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            status=status,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
            created_at=now,
        )
        self.session.add(audit)
        await self.session.flush()
        return audit

    async def get_audit_logs(self, resource: str, resource_id: str) -> list[AuditLog]:
        """Audit entries for one resource, oldest first."""
        stmt = (
            select(AuditLog)
            .where(AuditLog.resource == resource, AuditLog.resource_id == resource_id)
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Idempotency records
    async def get_idempotency_record(
        self, key: str, account_id: str
    ) -> Optional[IdempotencyRecord]:
        """Get the stored response for a key within an account scope."""
        stmt = select(IdempotencyRecord).where(
            IdempotencyRecord.key == key,
            IdempotencyRecord.account_id == account_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_idempotency_record(
        self,
        key: str,
        account_id: str,
        endpoint: str,
        status_code: int,
        response_body: str,
        now: datetime,
        expires_at: datetime,
    ) -> IdempotencyRecord:
        """Insert or overwrite the stored response for a key."""
        record = await self.get_idempotency_record(key, account_id)
        if record is None:
            record = IdempotencyRecord(key=key, account_id=account_id)
            self.session.add(record)

        record.endpoint = endpoint
        record.status_code = status_code
        record.response_body = response_body
        record.created_at = now
        record.expires_at = expires_at
        await self.session.flush()
        return record

    async def delete_expired_idempotency_records(self, now: datetime) -> int:
        """Purge records past their TTL. Returns the number deleted."""
        stmt = (
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
