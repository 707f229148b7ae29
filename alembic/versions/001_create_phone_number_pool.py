"""Create phone_number_pool and number_assignment_history tables

Revision ID: 001
Revises:
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if table exists."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('phone_number_pool'):
        op.create_table(
            'phone_number_pool',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('phone_number', sa.String(20), unique=True, nullable=False),
            sa.Column('region', sa.String(2), nullable=False, server_default='IE'),
            sa.Column('provider', sa.String(50), nullable=False, server_default='voipcloud'),
            sa.Column('provider_number_id', sa.String(100), nullable=True),
            sa.Column('external_voice_id', sa.String(100), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='available'),
            sa.Column('owner', sa.String(36), nullable=True),
            sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('reserved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('reserved_until', sa.DateTime(timezone=True), nullable=True),
            sa.Column('capabilities', sa.JSON, nullable=False),
            sa.Column('monthly_cost_cents', sa.Integer, nullable=False, server_default='0'),
            sa.Column('notes', sa.Text, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint(
                "status IN ('available', 'reserved', 'assigned', 'released')",
                name='ck_phone_number_pool_status',
            ),
        )
        op.create_index('ix_phone_number_pool_region', 'phone_number_pool', ['region'])
        op.create_index('ix_phone_number_pool_status', 'phone_number_pool', ['status'])
        op.create_index('ix_phone_number_pool_owner', 'phone_number_pool', ['owner'])

    if not table_exists('number_assignment_history'):
        op.create_table(
            'number_assignment_history',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column(
                'pool_entry_id',
                sa.String(36),
                sa.ForeignKey('phone_number_pool.id'),
                nullable=False,
            ),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('action', sa.String(20), nullable=False),
            sa.Column('reason', sa.Text, nullable=True),
            sa.Column('metadata', sa.JSON, nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint(
                "action IN ('reserved', 'assigned', 'released', 'cancelled')",
                name='ck_number_assignment_history_action',
            ),
        )
        op.create_index(
            'ix_number_assignment_history_pool_entry_id',
            'number_assignment_history',
            ['pool_entry_id'],
        )
        op.create_index(
            'ix_number_assignment_history_tenant_id',
            'number_assignment_history',
            ['tenant_id'],
        )


def downgrade() -> None:
    if table_exists('number_assignment_history'):
        op.drop_table('number_assignment_history')
    if table_exists('phone_number_pool'):
        op.drop_table('phone_number_pool')
