"""initial schema: ledger, sends, copy trading

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=20, scale=8)

user_role = sa.Enum('user', 'admin', 'super_admin', name='userrole')
transaction_type = sa.Enum(
    'deposit', 'withdrawal', 'swap', 'earn_claim', 'earn_invest',
    'copy_trade_start', 'copy_trade_stop', 'admin_adjustment',
    name='transactiontype',
)
transaction_status = sa.Enum('pending', 'completed', 'failed', 'cancelled', name='transactionstatus')
withdrawal_status = sa.Enum(
    'pending', 'admin_approved', 'processing', 'completed', 'failed', 'rejected',
    name='withdrawalstatus',
)
processing_type = sa.Enum('automatic', 'manual', name='processingtype')
risk_level = sa.Enum('low', 'medium', 'high', name='risklevel')
position_status = sa.Enum('active', 'stopped', name='positionstatus')
waitlist_status = sa.Enum('waiting', 'notified', 'claimed', 'expired', name='waitliststatus')
incident_status = sa.Enum('open', 'resolved', name='incidentstatus')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', user_role, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('balance', MONEY, nullable=False),
        sa.Column('locked_balance', MONEY, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'asset', name='uq_balances_user_asset'),
        sa.CheckConstraint('balance >= 0', name='ck_balances_balance_non_negative'),
        sa.CheckConstraint('locked_balance >= 0', name='ck_balances_locked_non_negative'),
        sa.CheckConstraint('locked_balance <= balance', name='ck_balances_locked_within_balance'),
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', transaction_type, nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('status', transaction_status, nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('to_address', sa.String(128), nullable=True),
        sa.Column('tx_hash', sa.String(128), nullable=True),
        sa.Column('network_fee', MONEY, nullable=True),
        sa.Column('notes', sa.String(500), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])

    op.create_table(
        'token_deployments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('symbol', sa.String(40), nullable=False, unique=True),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('network', sa.String(40), nullable=False),
        sa.Column('withdrawal_enabled', sa.Boolean(), nullable=True),
        sa.Column('min_withdrawal', MONEY, nullable=True),
        sa.Column('withdrawal_fee', MONEY, nullable=True),
        sa.Column('gateway_currency', sa.String(40), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
    )

    op.create_table(
        'deposit_addresses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('deployment_id', sa.Integer(), sa.ForeignKey('token_deployments.id'), nullable=False),
        sa.Column('address', sa.String(128), nullable=False),
    )
    op.create_index('ix_deposit_addresses_address', 'deposit_addresses', ['address'])

    op.create_table(
        'withdrawal_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('deployment_symbol', sa.String(40), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('to_address', sa.String(128), nullable=False),
        sa.Column('status', withdrawal_status, nullable=False),
        sa.Column('is_internal_transfer', sa.Boolean(), nullable=True),
        sa.Column('recipient_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('processing_type', processing_type, nullable=True),
        sa.Column('rejection_reason', sa.String(500), nullable=True),
        sa.Column('admin_approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('admin_approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tx_hash', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_withdrawal_requests_user_id', 'withdrawal_requests', ['user_id'])

    op.create_table(
        'traders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('risk_level', risk_level, nullable=False),
        sa.Column('historical_roi_min', sa.Numeric(10, 4), nullable=False),
        sa.Column('historical_roi_max', sa.Numeric(10, 4), nullable=False),
        sa.Column('max_drawdown', sa.Numeric(5, 4), nullable=False),
        sa.Column('max_copiers', sa.Integer(), nullable=False),
        sa.Column('current_copiers', sa.Integer(), nullable=False),
        sa.Column('aum_usdt', MONEY, nullable=False),
        sa.Column('performance_fee_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('lifetime_earnings_usdt', MONEY, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'copy_positions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('trader_id', sa.Integer(), sa.ForeignKey('traders.id'), nullable=False),
        sa.Column('allocation_usdt', MONEY, nullable=False),
        sa.Column('current_pnl', MONEY, nullable=False),
        sa.Column('daily_pnl_rate', MONEY, nullable=False),
        sa.Column('simulation_params', sa.JSON(), nullable=True),
        sa.Column('status', position_status, nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('stopped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('final_pnl', MONEY, nullable=True),
        sa.Column('performance_fee_paid', MONEY, nullable=True),
    )
    op.create_index('ix_copy_positions_user_id', 'copy_positions', ['user_id'])
    op.create_index('ix_copy_positions_trader_id', 'copy_positions', ['trader_id'])
    op.create_index(
        'uq_copy_positions_active', 'copy_positions', ['user_id', 'trader_id'],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'trader_waitlist',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('trader_id', sa.Integer(), sa.ForeignKey('traders.id'), nullable=False),
        sa.Column('status', waitlist_status, nullable=False),
        sa.Column('position_in_queue', sa.Integer(), nullable=False),
        sa.Column('claim_token', sa.String(64), nullable=True, unique=True),
        sa.Column('claim_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_trader_waitlist_trader_id', 'trader_waitlist', ['trader_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('body', sa.String(1000), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])

    op.create_table(
        'reconciliation_incidents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operation', sa.String(50), nullable=False),
        sa.Column('step', sa.String(50), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('asset', sa.String(20), nullable=True),
        sa.Column('amount', MONEY, nullable=True),
        sa.Column('error', sa.String(1000), nullable=False),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('status', incident_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
    )


def downgrade() -> None:
    for table in (
        'reconciliation_incidents', 'notifications', 'trader_waitlist', 'copy_positions', 'traders',
        'withdrawal_requests', 'deposit_addresses', 'token_deployments', 'transactions', 'balances', 'users',
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in (
        incident_status, waitlist_status, position_status, risk_level, processing_type,
        withdrawal_status, transaction_status, transaction_type, user_role,
    ):
        enum_type.drop(bind, checkfirst=True)
