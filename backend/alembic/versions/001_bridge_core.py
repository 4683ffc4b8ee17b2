"""Bridge core - loans, settlements, chain cursors, ledger credits

Revision ID: 001_bridge_core
Revises:
Create Date: 2026-10-19

Implements:
- loans: collateralized loans with embedded accrual checkpoint
- settlements: one row per source event id (exactly-once settlement)
- chain_cursors: per-chain event cursor
- ledger_credits: internal balance credits, idempotent by reference
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001_bridge_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # LOANS - Owned by the Loan Ledger, version compare-and-set on every write
    # =========================================================================
    op.create_table(
        'loans',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('borrower', sa.String(255), nullable=False),
        sa.Column('source_event_id', sa.String(255), nullable=True, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('origination_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_accrual_date', sa.Date(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),

        # Full loan document (amounts as integers, prices/rates as strings)
        sa.Column('document', postgresql.JSONB().with_variant(sa.JSON(), 'sqlite'), nullable=False),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('active', 'overdue', 'repaid', 'liquidated')",
            name='loans_status_valid',
        ),
        sa.CheckConstraint('version > 0', name='loans_version_positive'),
    )
    op.create_index('idx_loans_borrower', 'loans', ['borrower'])
    op.create_index('idx_loans_status', 'loans', ['status'])

    # =========================================================================
    # SETTLEMENTS - Exactly one row per source event id
    # =========================================================================
    op.create_table(
        'settlements',
        sa.Column('source_event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dest_tx_ref', sa.String(255), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('document', postgresql.JSONB().with_variant(sa.JSON(), 'sqlite'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'submitted', 'confirmed', 'failed')",
            name='settlements_status_valid',
        ),
        sa.CheckConstraint('attempts >= 0', name='settlements_attempts_non_negative'),
    )
    op.create_index('idx_settlements_status', 'settlements', ['status'])

    # =========================================================================
    # CHAIN_CURSORS - Advanced only after the covered events are recorded
    # =========================================================================
    op.create_table(
        'chain_cursors',
        sa.Column('chain', sa.String(50), primary_key=True),
        sa.Column('cursor', sa.String(255), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # =========================================================================
    # LEDGER_CREDITS - Idempotent by reference
    # =========================================================================
    op.create_table(
        'ledger_credits',
        sa.Column('reference', sa.String(255), primary_key=True),
        sa.Column('account', sa.String(255), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('amount > 0', name='ledger_credits_amount_positive'),
    )
    op.create_index('idx_ledger_credits_account', 'ledger_credits', ['account'])


def downgrade() -> None:
    op.drop_index('idx_ledger_credits_account', table_name='ledger_credits')
    op.drop_table('ledger_credits')
    op.drop_table('chain_cursors')
    op.drop_index('idx_settlements_status', table_name='settlements')
    op.drop_table('settlements')
    op.drop_index('idx_loans_status', table_name='loans')
    op.drop_index('idx_loans_borrower', table_name='loans')
    op.drop_table('loans')
