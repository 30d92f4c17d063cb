"""Add inference API key to pool resources

Revision ID: 9b3d5e7f1a22
Revises: 4f2a9c1e7b10
Create Date: 2025-12-15 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9b3d5e7f1a22'
down_revision: Union[str, None] = '4f2a9c1e7b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add pool_resources.api_key."""
    op.add_column('pool_resources', sa.Column('api_key', sa.String(), nullable=True))


def downgrade() -> None:
    """Drop pool_resources.api_key."""
    op.drop_column('pool_resources', 'api_key')
