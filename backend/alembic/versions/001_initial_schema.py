"""Initial schema

Creates the Coinfolio schema.

Tables:
    - coin_catalog: Global coin catalog mirrored from CoinGecko
    - holdings: One aggregate position per user and coin
    - holding_transactions: Signed ledger entries of a holding
    - coin_quotes: Latest cached price per coin
    - catalog_sync_state: Last run and resume cursor of each sync pass

Revision ID: 001
Revises: None
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

WALLETS = ('BINANCE', 'GATE', 'LEDGER', 'MEXC', 'PROBIT_GLOBAL', 'OTHER')
SYNC_STATUSES = ('NEVER', 'IN_PROGRESS', 'COMPLETED', 'PARTIAL', 'FAILED')
SYNC_KINDS = ('IDENTITY', 'IMAGES', 'PRUNE')


def upgrade() -> None:
    # ==========================================================================
    # COIN CATALOG
    # ==========================================================================
    op.create_table(
        'coin_catalog',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('symbol', sa.String(), nullable=False, index=True),
        sa.Column('name', sa.String(), nullable=False, index=True),
        sa.Column('image', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # ==========================================================================
    # HOLDINGS
    # ==========================================================================
    op.create_table(
        'holdings',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('user_id', sa.String(), nullable=False, index=True),
        sa.Column('coin_id', sa.String(), sa.ForeignKey('coin_catalog.id'), nullable=False, index=True),
        sa.Column('total_quantity', sa.Numeric(30, 12), nullable=False, server_default='0'),
        sa.Column('total_cost', sa.Numeric(30, 12), nullable=False, server_default='0'),
        sa.Column('average_price', sa.Numeric(30, 12), nullable=False, server_default='0'),
        sa.Column('desired_sell_price', sa.Numeric(30, 12), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'coin_id', name='uq_holding_user_coin'),
        sa.CheckConstraint('total_quantity >= 0', name='ck_holding_quantity_non_negative'),
    )

    # ==========================================================================
    # HOLDING TRANSACTIONS
    # ==========================================================================
    op.create_table(
        'holding_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column(
            'holding_id', sa.Integer(),
            sa.ForeignKey('holdings.id', ondelete='CASCADE'),
            nullable=False, index=True,
        ),
        sa.Column('quantity', sa.Numeric(30, 12), nullable=False),
        sa.Column('price', sa.Numeric(30, 12), nullable=False, server_default='0'),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('wallet', sa.Enum(*WALLETS, name='wallet'), nullable=False, server_default='OTHER'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_holding_transaction_holding_date', 'holding_transactions', ['holding_id', 'date'])

    # ==========================================================================
    # COIN QUOTES
    # ==========================================================================
    op.create_table(
        'coin_quotes',
        sa.Column(
            'coin_id', sa.String(),
            sa.ForeignKey('coin_catalog.id', ondelete='CASCADE'),
            primary_key=True,
        ),
        sa.Column('current_price', sa.Numeric(30, 12), nullable=True),
        sa.Column('price_change_percentage_7d', sa.Numeric(18, 8), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # ==========================================================================
    # CATALOG SYNC STATE
    # ==========================================================================
    op.create_table(
        'catalog_sync_state',
        sa.Column('kind', sa.Enum(*SYNC_KINDS, name='catalogsynckind'), primary_key=True),
        sa.Column('status', sa.Enum(*SYNC_STATUSES, name='syncstatusenum'), nullable=False),
        sa.Column('last_started', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_completed', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resume_page', sa.Integer(), nullable=True),
        sa.Column('summary', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('catalog_sync_state')
    op.drop_table('coin_quotes')
    op.drop_index('ix_holding_transaction_holding_date', table_name='holding_transactions')
    op.drop_table('holding_transactions')
    op.drop_table('holdings')
    op.drop_table('coin_catalog')
    sa.Enum(name='catalogsynckind').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='syncstatusenum').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='wallet').drop(op.get_bind(), checkfirst=True)
