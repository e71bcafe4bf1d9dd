"""Initial custody ledger schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

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
    # Wallets table
    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('public_address', sa.String(64), nullable=False),
        sa.Column('encrypted_private_key', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('public_address')
    )
    op.create_index('ix_wallets_user_id', 'wallets', ['user_id'], unique=True)

    # On-chain transactions table
    op.create_table(
        'onchain_txs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('purpose', sa.String(32), nullable=False),
        sa.Column('asset_mint', sa.String(64), nullable=False),
        sa.Column('amount', sa.String(40), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('signature', sa.String(128), nullable=False),
        sa.Column('target_address', sa.String(64), nullable=True),
        sa.Column('slot', sa.BigInteger(), nullable=True),
        sa.Column('block_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('signature')
    )
    op.create_index('ix_onchain_txs_user_purpose', 'onchain_txs', ['user_id', 'purpose'])
    op.create_index('ix_onchain_txs_status', 'onchain_txs', ['status'])

    # Pool states table
    op.create_table(
        'pool_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(64), nullable=False),
        sa.Column('token_a_mint', sa.String(64), nullable=False),
        sa.Column('token_b_mint', sa.String(64), nullable=False),
        sa.Column('reserve_a', sa.String(40), nullable=False),
        sa.Column('reserve_b', sa.String(40), nullable=False),
        sa.Column('lp_supply', sa.String(40), nullable=False),
        sa.Column('fee_bps', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_pool_states_address', 'pool_states', ['address'], unique=True)

    # Deposit cursors table
    op.create_table(
        'deposit_cursors',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(64), nullable=False),
        sa.Column('last_signature', sa.String(128), nullable=True),
        sa.Column('last_slot', sa.BigInteger(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_deposit_cursors_address', 'deposit_cursors', ['address'], unique=True)

    # Insurance policies table
    op.create_table(
        'insurance_policies',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('policy_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('pool_id', sa.String(64), nullable=False),
        sa.Column('coverage_amount', sa.String(40), nullable=False),
        sa.Column('premium_paid', sa.String(40), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expiry_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('signature', sa.String(128), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_insurance_policies_policy_id', 'insurance_policies', ['policy_id'], unique=True
    )
    op.create_index('ix_insurance_policies_user_id', 'insurance_policies', ['user_id'])

    # Insurance claims table
    op.create_table(
        'insurance_claims',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('policy_id', sa.String(64), nullable=False),
        sa.Column('claim_amount', sa.String(40), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('signature', sa.String(128), nullable=False),
        sa.Column('filed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['policy_id'], ['insurance_policies.policy_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('signature')
    )
    op.create_index('ix_insurance_claims_policy_id', 'insurance_claims', ['policy_id'])

    # DAO votes table
    op.create_table(
        'dao_votes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('proposal_id', sa.BigInteger(), nullable=False),
        sa.Column('choice', sa.String(16), nullable=False),
        sa.Column('weight', sa.String(40), nullable=False),
        sa.Column('signature', sa.String(128), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('signature')
    )
    op.create_index(
        'ix_dao_votes_user_proposal', 'dao_votes', ['user_id', 'proposal_id'], unique=True
    )


def downgrade() -> None:
    op.drop_table('dao_votes')
    op.drop_table('insurance_claims')
    op.drop_table('insurance_policies')
    op.drop_table('deposit_cursors')
    op.drop_table('pool_states')
    op.drop_table('onchain_txs')
    op.drop_table('wallets')
