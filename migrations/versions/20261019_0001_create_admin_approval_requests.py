"""create_admin_approval_requests

Revision ID: a1d3c0f4e001
Revises:
Create Date: 2026-10-19 09:12:44.120391

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1d3c0f4e001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'admin_approval_requests',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('action_type', sa.String(length=25), nullable=False),
        sa.Column('endpoint', sa.String(length=512), nullable=False),
        sa.Column('method', sa.String(length=16), nullable=False),
        sa.Column('target_ids', sa.JSON(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=8), nullable=False),
        sa.Column('requested_by_user_id', sa.String(length=128), nullable=False),
        sa.Column('requested_by_email', sa.String(length=320), nullable=True),
        sa.Column('requested_by_role', sa.String(length=32), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('note', sa.String(length=1000), nullable=True),
        sa.Column('approved_by_user_id', sa.String(length=128), nullable=True),
        sa.Column('approved_by_email', sa.String(length=320), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by_user_id', sa.String(length=128), nullable=True),
        sa.Column('rejected_by_email', sa.String(length=320), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.String(length=1000), nullable=True),
        sa.Column('executed_by_user_id', sa.String(length=128), nullable=True),
        sa.Column('executed_by_email', sa.String(length=320), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_admin_approval_requests')),
    )
    op.create_index(
        'ix_admin_approval_status_expires',
        'admin_approval_requests',
        ['status', 'expires_at'],
        unique=False,
    )
    op.create_index(
        'ix_admin_approval_requested_at',
        'admin_approval_requests',
        ['requested_at'],
        unique=False,
    )
    op.create_index(
        op.f('ix_admin_approval_requests_status'),
        'admin_approval_requests',
        ['status'],
        unique=False,
    )
    op.create_index(
        op.f('ix_admin_approval_requests_requested_by_user_id'),
        'admin_approval_requests',
        ['requested_by_user_id'],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        op.f('ix_admin_approval_requests_requested_by_user_id'),
        table_name='admin_approval_requests',
    )
    op.drop_index(op.f('ix_admin_approval_requests_status'), table_name='admin_approval_requests')
    op.drop_index('ix_admin_approval_requested_at', table_name='admin_approval_requests')
    op.drop_index('ix_admin_approval_status_expires', table_name='admin_approval_requests')
    op.drop_table('admin_approval_requests')
