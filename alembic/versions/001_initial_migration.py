"""Initial migration - badge relay tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create badge_claim_attempts table
    op.create_table('badge_claim_attempts',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Attempt identifier'),
        sa.Column('player_address', sa.String(length=42), nullable=False, comment='Lower-cased player address'),
        sa.Column('run_id', sa.String(length=64), nullable=False, comment='Originating run log id'),
        sa.Column('xp_earned', sa.Integer(), nullable=False, comment='XP earned in the run'),
        sa.Column('season', sa.Integer(), nullable=False, comment='Badge season'),
        sa.Column('token_id', sa.Integer(), nullable=False, comment='Badge tier, fixed at creation'),
        sa.Column('status', sa.String(length=30), nullable=False, comment='Current attempt status'),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True),
        sa.Column('requires_zk_proof', sa.Boolean(), nullable=False),
        sa.Column('zk_proof_data', sa.JSON(), nullable=True),
        sa.Column('zk_proof_verified', sa.Boolean(), nullable=True, comment='None until verified, False when the proof was rejected'),
        sa.Column('tx_hash', sa.String(length=66), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last update time (UTC)'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_badge_attempts_player_run', 'badge_claim_attempts', ['player_address', 'run_id'])
    op.create_index('idx_badge_attempts_status', 'badge_claim_attempts', ['status'])
    live_claim_where = (
        "status IN ('pending_verification', 'pending', 'minting', 'completed') "
        "OR (status = 'failed' AND zk_proof_verified IS NOT FALSE)"
    )
    op.create_index(
        'uq_badge_attempts_live_claim', 'badge_claim_attempts', ['player_address', 'run_id'],
        unique=True,
        postgresql_where=sa.text(live_claim_where),
        sqlite_where=sa.text(live_claim_where)
    )

    # Create missed_run_events table
    op.create_table('missed_run_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('player_address', sa.String(length=42), nullable=False),
        sa.Column('xp_earned', sa.Integer(), nullable=False),
        sa.Column('cp_earned', sa.Integer(), nullable=False),
        sa.Column('dbp_minted', sa.Float(), nullable=False, comment='DBP minted, in ether units'),
        sa.Column('duration', sa.Integer(), nullable=False, comment='Run duration in seconds'),
        sa.Column('bonus_throw_used', sa.Boolean(), nullable=False),
        sa.Column('boosts_used', sa.JSON(), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('tx_hash', sa.String(length=66), nullable=False),
        sa.Column('log_index', sa.Integer(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_missed_events_processed_block', 'missed_run_events', ['processed', 'block_number'])
    op.create_index('idx_missed_events_tx', 'missed_run_events', ['tx_hash', 'log_index'])

    # Create run_logs table
    op.create_table('run_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('player_address', sa.String(length=42), nullable=False),
        sa.Column('seed', sa.String(length=66), nullable=True),
        sa.Column('xp_earned', sa.Integer(), nullable=False),
        sa.Column('cp_earned', sa.Integer(), nullable=False),
        sa.Column('dbp_minted', sa.Float(), nullable=False),
        sa.Column('duration', sa.Integer(), nullable=False),
        sa.Column('bonus_throw_used', sa.Boolean(), nullable=False),
        sa.Column('boosts_used', sa.JSON(), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('recovered', sa.Boolean(), nullable=False, comment='Created from a recovered chain event'),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last update time (UTC)'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_run_logs_seed', 'run_logs', ['seed'])
    op.create_index('idx_run_logs_player_created', 'run_logs', ['player_address', 'created_at'])
    op.create_index('idx_run_logs_created', 'run_logs', ['created_at'])

    # Create used_nullifiers table
    op.create_table('used_nullifiers',
        sa.Column('nullifier', sa.String(length=80), nullable=False),
        sa.Column('player_address', sa.String(length=42), nullable=False),
        sa.Column('claim_id', sa.String(length=80), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('nullifier')
    )

    # Create scan_checkpoints table
    op.create_table('scan_checkpoints',
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last update time (UTC)'),
        sa.PrimaryKeyConstraint('name')
    )


def downgrade() -> None:
    op.drop_table('scan_checkpoints')
    op.drop_table('used_nullifiers')

    op.drop_index('idx_run_logs_created', table_name='run_logs')
    op.drop_index('idx_run_logs_player_created', table_name='run_logs')
    op.drop_index('idx_run_logs_seed', table_name='run_logs')
    op.drop_table('run_logs')

    op.drop_index('idx_missed_events_tx', table_name='missed_run_events')
    op.drop_index('idx_missed_events_processed_block', table_name='missed_run_events')
    op.drop_table('missed_run_events')

    op.drop_index('uq_badge_attempts_live_claim', table_name='badge_claim_attempts')
    op.drop_index('idx_badge_attempts_status', table_name='badge_claim_attempts')
    op.drop_index('idx_badge_attempts_player_run', table_name='badge_claim_attempts')
    op.drop_table('badge_claim_attempts')
