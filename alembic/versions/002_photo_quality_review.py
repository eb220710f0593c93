"""Add quality review columns to photos

Revision ID: 002_photo_quality_review
Revises: 001_listing_pipeline_tables
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002_photo_quality_review'
down_revision: Union[str, Sequence[str], None] = '001_listing_pipeline_tables'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add quality_score and needs_review to photos."""
    # Using batch mode for SQLite compatibility
    with op.batch_alter_table('photos', schema=None) as batch_op:
        batch_op.add_column(sa.Column('quality_score', sa.Float(), nullable=True))
        batch_op.add_column(sa.Column('needs_review', sa.Boolean(), nullable=False, server_default='false'))


def downgrade() -> None:
    with op.batch_alter_table('photos', schema=None) as batch_op:
        batch_op.drop_column('needs_review')
        batch_op.drop_column('quality_score')
