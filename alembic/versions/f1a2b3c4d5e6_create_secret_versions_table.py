"""Create secret_versions table

Revision ID: f1a2b3c4d5e6
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = 'f1a2b3c4d5e6'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create secret_versions table for versioned, encrypted project secrets."""
    op.create_table(
        'secret_versions',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('value_encrypted', sa.Text(), nullable=False),

        # Versioning
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('rotated_from', UUID(as_uuid=True), nullable=True),
        sa.Column('rotation_reason', sa.String(length=500), nullable=True),

        # Grace period
        sa.Column('grace_period_ends_at', sa.DateTime(), nullable=True),
        sa.Column('grace_period_warning_sent_at', sa.DateTime(), nullable=True),
        sa.Column('grace_period_notified_at', sa.DateTime(), nullable=True),

        # Deletion
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('hard_delete_after_days', sa.Integer(), nullable=False, server_default='30'),

        # Provenance
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),

        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'name', 'version', name='uq_secret_versions_project_name_version'),
    )

    op.create_index('ix_secret_versions_project_name', 'secret_versions', ['project_id', 'name'])
    op.create_index('ix_secret_versions_grace_period_ends_at', 'secret_versions', ['grace_period_ends_at'])
    op.create_index('ix_secret_versions_deleted_at', 'secret_versions', ['deleted_at'])

    # At most one live active version per name
    op.create_index(
        'uq_secret_versions_one_active',
        'secret_versions',
        ['project_id', 'name'],
        unique=True,
        postgresql_where=sa.text('active AND deleted_at IS NULL'),
    )


def downgrade() -> None:
    """Drop secret_versions table."""
    op.drop_index('uq_secret_versions_one_active', table_name='secret_versions')
    op.drop_index('ix_secret_versions_deleted_at', table_name='secret_versions')
    op.drop_index('ix_secret_versions_grace_period_ends_at', table_name='secret_versions')
    op.drop_index('ix_secret_versions_project_name', table_name='secret_versions')
    op.drop_table('secret_versions')
