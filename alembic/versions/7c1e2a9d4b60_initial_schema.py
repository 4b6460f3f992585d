"""initial_schema

Revision ID: 7c1e2a9d4b60
Revises:
Create Date: 2026-10-19 09:12:44.517302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7c1e2a9d4b60'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'containers',
        sa.Column('id', sa.String(length=12), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('engine_ref', sa.String(length=100), nullable=True),
        sa.Column('image', sa.String(length=500), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('folder_path', sa.String(length=1024), nullable=True),
        sa.Column('startup_script', sa.Text(), nullable=True),
        sa.Column('port_mappings', sa.JSON(), nullable=True),
        sa.Column('environment_vars', sa.JSON(), nullable=True),
        sa.Column('owner_id', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sa.UniqueConstraint('engine_ref'),
    )
    op.create_table(
        'container_settings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('container_id', sa.String(length=12), nullable=False),
        sa.Column('auto_restart', sa.Boolean(), nullable=False),
        sa.Column('max_memory', sa.String(length=20), nullable=True),
        sa.Column('max_cpu', sa.String(length=20), nullable=True),
        sa.Column('tunnel_enabled', sa.Boolean(), nullable=False),
        sa.Column('tunnel_url', sa.String(length=1024), nullable=True),
        sa.Column('tunnel_token', sa.Text(), nullable=True),
        sa.Column('settings_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['container_id'], ['containers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('container_id'),
    )
    op.create_table(
        'container_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('container_id', sa.String(length=12), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=20), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_container_logs_container_ts',
        'container_logs',
        ['container_id', 'timestamp'],
        unique=False
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_container_logs_container_ts', table_name='container_logs')
    op.drop_table('container_logs')
    op.drop_table('container_settings')
    op.drop_table('containers')
