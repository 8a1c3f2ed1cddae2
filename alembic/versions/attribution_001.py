"""attribution schema

Revision ID: attribution_001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'attribution_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Tracking links (owned by the link directory) ---
    op.create_table('tracking_links',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('source', sa.String(length=255), nullable=False),
        sa.Column('medium', sa.String(length=255), nullable=False),
        sa.Column('campaign', sa.String(length=255), nullable=False),
        sa.Column('content', sa.String(length=255), nullable=True),
        sa.Column('term', sa.String(length=255), nullable=True),
        sa.Column('utm_id', sa.String(length=255), nullable=True),
        sa.Column('source_platform', sa.String(length=255), nullable=True),
        sa.Column('target_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_tracking_links_hash'), 'tracking_links', ['hash'], unique=True)

    # --- Click events ---
    op.create_table('click_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('utm_content', sa.String(length=255), nullable=True),
        sa.Column('utm_term', sa.String(length=255), nullable=True),
        sa.Column('utm_id', sa.String(length=255), nullable=True),
        sa.Column('utm_source_platform', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_click_events_hash_clicked', 'click_events', ['hash', 'clicked_at'], unique=False)
    op.create_index('ix_click_events_clicked_at', 'click_events', ['clicked_at'], unique=False)

    # --- Daily click counters ---
    op.create_table('click_counters',
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('hash', 'day'),
    )

    # --- Conversions ---
    op.create_table('conversions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('click_event_id', sa.Integer(), nullable=False),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('fractional_conversion', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['click_event_id'], ['click_events.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_conversions_click_event_id'), 'conversions', ['click_event_id'], unique=False)
    op.create_index(op.f('ix_conversions_converted_at'), 'conversions', ['converted_at'], unique=False)

    # --- Platform click IDs ---
    op.create_table('platform_click_ids',
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('platform', sa.String(length=50), nullable=False),
        sa.Column('click_id', sa.String(length=255), nullable=False),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('hash', 'platform'),
    )
    op.create_index(op.f('ix_platform_click_ids_clicked_at'), 'platform_click_ids', ['clicked_at'], unique=False)

    # --- Delivery queue ---
    op.create_table('queue_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reporter', sa.String(length=50), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('label', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts_per_round', sa.Integer(), nullable=True),
        sa.Column('retry_delay', sa.Integer(), nullable=True),
        sa.Column('max_rounds', sa.Integer(), nullable=True),
        sa.Column('round_delay', sa.Integer(), nullable=True),
        sa.Column('retry_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('leased_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_queue_jobs_status_retry', 'queue_jobs', ['status', 'retry_after', 'id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_queue_jobs_status_retry', table_name='queue_jobs')
    op.drop_table('queue_jobs')
    op.drop_index(op.f('ix_platform_click_ids_clicked_at'), table_name='platform_click_ids')
    op.drop_table('platform_click_ids')
    op.drop_index(op.f('ix_conversions_converted_at'), table_name='conversions')
    op.drop_index(op.f('ix_conversions_click_event_id'), table_name='conversions')
    op.drop_table('conversions')
    op.drop_table('click_counters')
    op.drop_index('ix_click_events_clicked_at', table_name='click_events')
    op.drop_index('ix_click_events_hash_clicked', table_name='click_events')
    op.drop_table('click_events')
    op.drop_index(op.f('ix_tracking_links_hash'), table_name='tracking_links')
    op.drop_table('tracking_links')
