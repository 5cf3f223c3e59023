"""add connection aggregator

Revision ID: 8a4e2f61c7d3
Revises: 3d1c7a9e5b20
Create Date: 2026-10-18 16:21:40.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8a4e2f61c7d3'
down_revision: Union[str, Sequence[str], None] = '3d1c7a9e5b20'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    from sqlalchemy import inspect as sa_inspect
    conn = op.get_bind()
    existing = [c['name'] for c in sa_inspect(conn).get_columns('connections')]

    # Connections created before multi-aggregator support were all Pluggy items.
    if 'aggregator' not in existing:
        op.add_column(
            'connections',
            sa.Column('aggregator', sa.String(), nullable=False, server_default='Pluggy'),
        )


def downgrade() -> None:
    """Downgrade schema."""
    from sqlalchemy import inspect as sa_inspect
    conn = op.get_bind()
    existing = [c['name'] for c in sa_inspect(conn).get_columns('connections')]
    if 'aggregator' in existing:
        op.drop_column('connections', 'aggregator')
