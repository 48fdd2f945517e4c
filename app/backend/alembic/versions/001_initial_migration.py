"""Initial migration - race pools, participants and claim requests

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


race_status = sa.Enum('ACTIVE', 'COMPLETED', name='racestatus')
snapshot_status = sa.Enum(
    'PENDING', 'ENTRY_IN_PROGRESS', 'ENTRY_COMPLETE', 'END_IN_PROGRESS', 'COMPLETED', 'ERROR',
    name='snapshotstatus'
)
claim_status = sa.Enum('PENDING', 'SUBMITTING', 'SUBMITTED', 'COMPLETED', 'FAILED', name='claimstatus')


def upgrade() -> None:
    # Create race_pools table
    op.create_table('race_pools',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('token_symbol', sa.String(length=32), nullable=True, comment='Display symbol of the raced token'),
        sa.Column('contract_address', sa.String(length=44), nullable=True, comment='Token mint whose holder balances drive ranking'),
        sa.Column('token_decimals', sa.Integer(), nullable=True, comment='Decimal places of the token mint'),
        sa.Column('status', race_status, nullable=False, comment='Lifecycle status'),
        sa.Column('prize_pool', sa.Numeric(precision=38, scale=9), nullable=False, comment='Total prize pool across all rounds'),
        sa.Column('daily_reward_amount', sa.Numeric(precision=38, scale=9), nullable=True, comment='Explicit per-round reward budget'),
        sa.Column('total_rounds', sa.Integer(), nullable=True, comment='Number of rounds in the race'),
        sa.Column('current_round', sa.Integer(), nullable=True, comment='Current round, 1-indexed'),
        sa.Column('round_started_at', sa.DateTime(), nullable=True, comment="Anchor for the current round's phase deadlines"),
        sa.Column('entry_snapshot_at', sa.DateTime(), nullable=True, comment="When the current round's entry snapshot completed"),
        sa.Column('snapshot_status', snapshot_status, nullable=True, comment='Snapshot phase of the current round'),
        sa.Column('snapshot_error', sa.Text(), nullable=True, comment='Last phase error message'),
        sa.Column('retry_count', sa.Integer(), nullable=True, comment='Consecutive failed phase attempts'),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True, comment='When the last failed attempt was recorded'),
        sa.Column('total_participants', sa.Integer(), nullable=False, comment='Participants captured by the latest entry snapshot'),
        sa.Column('time_remaining_hours', sa.Numeric(precision=10, scale=2), nullable=True, comment='Estimated hours until the race completes'),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last modification time (UTC)'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create race_claim_requests table
    op.create_table('race_claim_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('race_id', sa.String(length=36), nullable=False, comment='Race the rewards were earned in'),
        sa.Column('wallet_address', sa.String(length=44), nullable=False, comment='Receiving wallet'),
        sa.Column('amount', sa.Numeric(precision=38, scale=9), nullable=False, comment='Total token amount to pay out'),
        sa.Column('status', claim_status, nullable=False, comment='Payout status'),
        sa.Column('attempts', sa.Integer(), nullable=False, comment='Submission attempts made'),
        sa.Column('last_error', sa.Text(), nullable=True, comment='Last submission error'),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True, comment='When the last submission was attempted'),
        sa.Column('tx_hash', sa.String(length=100), nullable=True, comment='Payout transaction signature'),
        sa.Column('completed_at', sa.DateTime(), nullable=True, comment='When the payout was confirmed'),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last modification time (UTC)'),
        sa.ForeignKeyConstraint(['race_id'], ['race_pools.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create race_participants table
    op.create_table('race_participants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('race_id', sa.String(length=36), nullable=False, comment='Race this entry belongs to'),
        sa.Column('wallet_address', sa.String(length=44), nullable=False, comment='Holder wallet'),
        sa.Column('round_number', sa.Integer(), nullable=False, comment='Round this entry belongs to'),
        sa.Column('rank', sa.Integer(), nullable=False, comment='Rank in the entry snapshot, 1-indexed'),
        sa.Column('entry_balance', sa.Numeric(precision=38, scale=9), nullable=False, comment='Balance at entry snapshot'),
        sa.Column('token_balance', sa.Numeric(precision=38, scale=9), nullable=False, comment='Balance at the latest evaluation'),
        sa.Column('is_eligible', sa.Boolean(), nullable=False, comment='Retained the required share of the entry balance'),
        sa.Column('reward_amount', sa.Numeric(precision=38, scale=9), nullable=False, comment='Reward computed at round end'),
        sa.Column('claimed', sa.Boolean(), nullable=False, comment='Reward included in a claim request'),
        sa.Column('claimed_at', sa.DateTime(), nullable=True, comment='When the reward was claimed'),
        sa.Column('claim_request_id', sa.Integer(), nullable=True, comment='Claim request covering this reward'),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last modification time (UTC)'),
        sa.ForeignKeyConstraint(['race_id'], ['race_pools.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['claim_request_id'], ['race_claim_requests.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('race_id', 'wallet_address', 'round_number', name='uq_race_participant_round')
    )

    # Create indexes
    op.create_index('idx_race_status_snapshot', 'race_pools', ['status', 'snapshot_status'])
    op.create_index('idx_race_snapshot_updated', 'race_pools', ['snapshot_status', 'updated_at'])

    op.create_index('idx_race_participant_round_rank', 'race_participants', ['race_id', 'round_number', 'rank'])
    op.create_index('idx_race_participant_wallet', 'race_participants', ['wallet_address', 'race_id'])

    op.create_index('idx_claim_status_attempt', 'race_claim_requests', ['status', 'last_attempt_at'])
    op.create_index('idx_claim_wallet_race', 'race_claim_requests', ['wallet_address', 'race_id'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('idx_claim_wallet_race', table_name='race_claim_requests')
    op.drop_index('idx_claim_status_attempt', table_name='race_claim_requests')

    op.drop_index('idx_race_participant_wallet', table_name='race_participants')
    op.drop_index('idx_race_participant_round_rank', table_name='race_participants')

    op.drop_index('idx_race_snapshot_updated', table_name='race_pools')
    op.drop_index('idx_race_status_snapshot', table_name='race_pools')

    # Drop tables
    op.drop_table('race_participants')
    op.drop_table('race_claim_requests')
    op.drop_table('race_pools')

    # Drop enum types
    bind = op.get_bind()
    claim_status.drop(bind, checkfirst=True)
    snapshot_status.drop(bind, checkfirst=True)
    race_status.drop(bind, checkfirst=True)
