"""Initial schema with all current tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-03-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts table
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('telegram_id', sa.BigInteger(), nullable=True),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id')
    )
    op.create_index('ix_accounts_external_id', 'accounts', ['external_id'])

    # Wallets table
    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('chain', sa.String(20), nullable=False),
        sa.Column('address', sa.String(128), nullable=False),
        sa.Column('balance_usd', sa.Numeric(36, 18), nullable=True),
        sa.Column('balance_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_wallets_account_id', 'wallets', ['account_id'])
    op.create_index('ix_wallets_chain_address', 'wallets', ['chain', 'address'], unique=True)

    # Cards table
    op.create_table(
        'cards',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('is_disposable', sa.Boolean(), nullable=False),
        sa.Column('total_spent', sa.Numeric(36, 18), nullable=False),
        sa.Column('monthly_spent', sa.Numeric(36, 18), nullable=False),
        sa.Column('spending_limit', sa.Numeric(36, 18), nullable=True),
        sa.Column('daily_limit', sa.Numeric(36, 18), nullable=True),
        sa.Column('monthly_limit', sa.Numeric(36, 18), nullable=True),
        sa.Column('allowed_mcc', sa.JSON(), nullable=True),
        sa.Column('blocked_mcc', sa.JSON(), nullable=True),
        sa.Column('allowed_countries', sa.JSON(), nullable=True),
        sa.Column('blocked_countries', sa.JSON(), nullable=True),
        sa.Column('cashback_rate', sa.Numeric(8, 6), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cards_account_id', 'cards', ['account_id'])

    # Transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('card_id', sa.Integer(), nullable=True),
        sa.Column('wallet_id', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('chain', sa.String(20), nullable=True),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(36, 18), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False),
        sa.Column('amount_usd', sa.Numeric(36, 18), nullable=False),
        sa.Column('counterparty', sa.String(255), nullable=True),
        sa.Column('mcc', sa.String(4), nullable=True),
        sa.Column('merchant_name', sa.String(255), nullable=True),
        sa.Column('merchant_country', sa.String(2), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cashback_amount', sa.Numeric(36, 18), nullable=False),
        sa.Column('is_anomaly', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.ForeignKeyConstraint(['card_id'], ['cards.id']),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash')
    )
    op.create_index('ix_transactions_card_created', 'transactions', ['card_id', 'created_at'])
    op.create_index('ix_transactions_wallet_created', 'transactions', ['wallet_id', 'created_at'])
    op.create_index('ix_transactions_account_created', 'transactions', ['account_id', 'created_at'])
    op.create_index('ix_transactions_status_created', 'transactions', ['status', 'created_at'])

    # Fraud alerts table
    op.create_table(
        'fraud_alerts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=True),
        sa.Column('card_id', sa.Integer(), nullable=True),
        sa.Column('wallet_id', sa.Integer(), nullable=True),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('amount_usd', sa.Numeric(36, 18), nullable=False),
        sa.Column('counterparty', sa.String(255), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('reasons', sa.JSON(), nullable=True),
        sa.Column('blocked', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id']),
        sa.ForeignKeyConstraint(['card_id'], ['cards.id']),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_fraud_alerts_account_id', 'fraud_alerts', ['account_id'])

    # Idempotency records table
    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('key', sa.String(255), nullable=False),
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('endpoint', sa.String(100), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('response_body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_idempotency_key_account', 'idempotency_records', ['key', 'account_id'], unique=True)
    op.create_index('ix_idempotency_records_expires_at', 'idempotency_records', ['expires_at'])

    # Audit logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('resource', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_resource', 'audit_logs', ['resource', 'resource_id'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('idempotency_records')
    op.drop_table('fraud_alerts')
    op.drop_table('transactions')
    op.drop_table('cards')
    op.drop_table('wallets')
    op.drop_table('accounts')
