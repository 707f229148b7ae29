"""Create provisioning_queue table

Revision ID: 002
Revises: 001
Create Date: 2026-10-06
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if table exists."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('provisioning_queue'):
        op.create_table(
            'provisioning_queue',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('plan_id', sa.String(50), nullable=False),
            sa.Column('region', sa.String(2), nullable=False, server_default='IE'),
            sa.Column('numbers_requested', sa.Integer, nullable=False),
            sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
            sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('error_message', sa.Text, nullable=True),
            sa.Column('result', sa.JSON, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint(
                "status IN ('pending', 'processing', 'completed', 'failed', "
                "'partial', 'max_attempts_reached')",
                name='ck_provisioning_queue_status',
            ),
        )
        op.create_index('ix_provisioning_queue_tenant_id', 'provisioning_queue', ['tenant_id'])
        op.create_index('ix_provisioning_queue_status', 'provisioning_queue', ['status'])
        op.create_index('ix_provisioning_queue_next_retry_at', 'provisioning_queue', ['next_retry_at'])


def downgrade() -> None:
    if table_exists('provisioning_queue'):
        op.drop_table('provisioning_queue')
