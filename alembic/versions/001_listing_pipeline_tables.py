"""Add listings, jobs, photos and enhancement_logs tables

Revision ID: 001_listing_pipeline_tables
Revises:
Create Date: 2026-10-19

This migration adds the tables required for listing preparation:
- listings: preparation status, hero photo and confidence
- jobs: one row per preparation attempt, one active job per listing
- photos: per-photo status, analysis and assigned tools
- enhancement_logs: cost log, one row per executed (photo, tool) pair
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_listing_pipeline_tables'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_JOB_PREDICATE = sa.text("status IN ('queued', 'processing')")


def upgrade() -> None:
    op.create_table(
        'listings',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False, index=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('preparation_status', sa.String(20), nullable=False, server_default='unprepared'),
        sa.Column('hero_photo_id', sa.String(), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('prepared_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('listing_id', sa.String(), sa.ForeignKey('listings.id'), nullable=False, index=True),
        sa.Column('owner_id', sa.String(), nullable=False, index=True),
        sa.Column('priority', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(50), nullable=True),
        sa.Column('error_stage', sa.String(50), nullable=True),
        sa.Column('celery_task_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )

    # At most one queued/processing job per listing
    op.create_index(
        'uq_jobs_active_listing',
        'jobs',
        ['listing_id'],
        unique=True,
        sqlite_where=ACTIVE_JOB_PREDICATE,
        postgresql_where=ACTIVE_JOB_PREDICATE,
    )

    op.create_table(
        'photos',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('listing_id', sa.String(), sa.ForeignKey('listings.id'), nullable=False, index=True),
        sa.Column('upload_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('raw_storage_key', sa.String(), nullable=False),
        sa.Column('enhanced_storage_key', sa.String(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('analysis', sa.JSON(), nullable=True),
        sa.Column('assigned_tools', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'enhancement_logs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('job_id', sa.String(), sa.ForeignKey('jobs.id'), nullable=False, index=True),
        sa.Column('photo_id', sa.String(), sa.ForeignKey('photos.id'), nullable=False, index=True),
        sa.Column('tool_id', sa.String(50), nullable=False),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('storage_key', sa.String(), nullable=True),
        sa.Column('cost_tier', sa.String(10), nullable=False, server_default='free'),
        sa.Column('duration_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('failure_kind', sa.String(50), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP'), index=True),
    )

    # Create indexes for common queries
    op.create_index('ix_jobs_status', 'jobs', ['status'])
    op.create_index('ix_photos_listing_order', 'photos', ['listing_id', 'upload_order'])
    op.create_index('ix_enhancement_logs_tool_tier', 'enhancement_logs', ['tool_id', 'cost_tier'])


def downgrade() -> None:
    op.drop_index('ix_enhancement_logs_tool_tier', 'enhancement_logs')
    op.drop_index('ix_photos_listing_order', 'photos')
    op.drop_index('ix_jobs_status', 'jobs')
    op.drop_table('enhancement_logs')
    op.drop_table('photos')
    op.drop_index('uq_jobs_active_listing', 'jobs')
    op.drop_table('jobs')
    op.drop_table('listings')
