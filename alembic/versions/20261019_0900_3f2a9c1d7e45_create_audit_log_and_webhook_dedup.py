"""create_audit_log_and_webhook_dedup

Revision ID: 3f2a9c1d7e45
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f2a9c1d7e45'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'audit_log_entries',
        sa.Column('id', sa.BIGINT().with_variant(sa.Integer(), 'sqlite'), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('actor', sa.TEXT(), nullable=False),
        sa.Column('action', sa.TEXT(), nullable=False),
        sa.Column('target_email', sa.TEXT(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_log_created', 'audit_log_entries', ['created_at'])
    op.create_index('idx_audit_log_action', 'audit_log_entries', ['action'])
    op.create_index('idx_audit_log_target', 'audit_log_entries', ['target_email'])

    op.create_table(
        'webhook_dedup_events',
        sa.Column('id', sa.BIGINT().with_variant(sa.Integer(), 'sqlite'), autoincrement=True, nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('dedup_key', sa.TEXT(), nullable=False),
        sa.Column('first_seen_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('request_hash', sa.TEXT(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])
    op.create_index('idx_webhook_dedup_first_seen', 'webhook_dedup_events', ['first_seen_at'])


def downgrade() -> None:
    op.drop_index('idx_webhook_dedup_first_seen', table_name='webhook_dedup_events')
    op.drop_index('idx_webhook_dedup_status', table_name='webhook_dedup_events')
    op.drop_table('webhook_dedup_events')

    op.drop_index('idx_audit_log_target', table_name='audit_log_entries')
    op.drop_index('idx_audit_log_action', table_name='audit_log_entries')
    op.drop_index('idx_audit_log_created', table_name='audit_log_entries')
    op.drop_table('audit_log_entries')
