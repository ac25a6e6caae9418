"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the bot database schema."""

    # ========================================================================
    # Create user_profiles table
    # ========================================================================
    op.create_table(
        'user_profiles',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('first_visit_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # ========================================================================
    # Create token_accounts table
    # ========================================================================
    op.create_table(
        'token_accounts',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('plan', sa.String(10), nullable=True),
        sa.Column('plan_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pending_payment', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_token_balance_non_negative'),
        sa.UniqueConstraint('user_id', name='uq_token_account_user'),
        sa.ForeignKeyConstraint(['user_id'], ['user_profiles.id'], name='fk_token_accounts_user', ondelete='CASCADE'),
    )

    # Partial index for lazy subscription expiry sweeps
    op.create_index('idx_token_accounts_plan_expires', 'token_accounts', ['plan_expires_at'], postgresql_where=sa.text('plan_expires_at IS NOT NULL'))

    # ========================================================================
    # Create orders_income table
    # ========================================================================
    op.create_table(
        'orders_income',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('tokens', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('order_id', name='uq_orders_income_order'),
        sa.CheckConstraint('tokens >= 0', name='ck_orders_income_tokens_non_negative'),
        sa.ForeignKeyConstraint(['user_id'], ['user_profiles.id'], name='fk_orders_income_user', ondelete='CASCADE'),
    )

    # ========================================================================
    # Create token_transactions table
    # ========================================================================
    op.create_table(
        'token_transactions',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(6), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('order_income_id', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_token_transaction_amount_positive'),
        sa.CheckConstraint("direction IN ('DEBIT', 'CREDIT')", name='ck_token_transaction_direction'),
        sa.ForeignKeyConstraint(['user_id'], ['user_profiles.id'], name='fk_token_transactions_user', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['order_income_id'], ['orders_income.id'], name='fk_token_transactions_income', ondelete='SET NULL'),
    )

    op.create_index('idx_token_transactions_user_created', 'token_transactions', ['user_id', 'created_at'])

    # ========================================================================
    # Create conversation_sessions table
    # ========================================================================
    op.create_table(
        'conversation_sessions',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('assistant_id', sa.String(128), nullable=False),
        sa.Column('session_id', sa.String(128), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('user_id', 'assistant_id', name='uq_conversation_session_user'),
        sa.ForeignKeyConstraint(['user_id'], ['user_profiles.id'], name='fk_conversation_sessions_user', ondelete='CASCADE'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('conversation_sessions')
    op.drop_table('token_transactions')
    op.drop_table('orders_income')
    op.drop_index('idx_token_accounts_plan_expires', table_name='token_accounts')
    op.drop_table('token_accounts')
    op.drop_table('user_profiles')
