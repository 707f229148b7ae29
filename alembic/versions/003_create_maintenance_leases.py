"""Create maintenance_leases table

Revision ID: 003
Revises: 002
Create Date: 2026-10-09
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '003'
down_revision: Union[str, None] = '002'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if table exists."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('maintenance_leases'):
        op.create_table(
            'maintenance_leases',
            sa.Column('name', sa.String(100), primary_key=True),
            sa.Column('owner', sa.String(64), nullable=False),
            sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        )


def downgrade() -> None:
    if table_exists('maintenance_leases'):
        op.drop_table('maintenance_leases')
