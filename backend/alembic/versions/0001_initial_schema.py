"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Tables:
  - apps: deployable apps tied to a Git repository
  - deployments: build-and-run attempts (also the work queue)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # 1. apps
    # =========================================================================
    op.create_table(
        'apps',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('repo_url', sa.Text(), nullable=False),
        sa.Column('branch', sa.String(255), nullable=True),
        sa.Column('url', sa.String(255), nullable=True),
        # Free-text label, validated in code
        sa.Column('status', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('name', name='uq_apps_name'),
    )
    op.create_index('ix_apps_user_id', 'apps', ['user_id'])

    # =========================================================================
    # 2. deployments
    # =========================================================================
    op.create_table(
        'deployments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('app_id', sa.Integer(), sa.ForeignKey('apps.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('image_name', sa.String(255), nullable=True),
        sa.Column('container_id', sa.String(255), nullable=True),
        sa.Column('subdomain', sa.String(255), nullable=True),
        sa.Column('build_log', sa.Text(), nullable=True),
        sa.Column('runtime_log', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_deployments_app_id', 'deployments', ['app_id'])
    op.create_index('ix_deployments_status', 'deployments', ['status'])
    op.create_index('ix_deployments_subdomain', 'deployments', ['subdomain'])
    # Queue order for the dequeue query
    op.create_index(
        'ix_deployments_status_created_at',
        'deployments',
        ['status', 'created_at', 'id'],
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table('deployments')
    op.drop_table('apps')
