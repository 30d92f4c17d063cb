"""Initial schema: users, user settings, alert records, pool resources

Revision ID: 4f2a9c1e7b10
Revises:
Create Date: 2025-12-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f2a9c1e7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the metering tables."""
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('phone_number', sa.String(), nullable=False),
        sa.Column('credits', sa.Float(), nullable=False, server_default='0'),
        sa.Column('credits_left', sa.Float(), nullable=False, server_default='0'),
        sa.Column('sub_tier', sa.String(length=16), nullable=True),
        sa.Column('charge_when_under', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('charge_back_to', sa.Float(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_payment_method_id', sa.String(), nullable=True),
        sa.Column('last_credits_notification', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'])
    op.create_index(op.f('ix_users_created_at'), 'users', ['created_at'])
    op.create_index(op.f('ix_users_email'), 'users', ['email'])
    op.create_index(op.f('ix_users_phone_number'), 'users', ['phone_number'])

    op.create_table(
        'user_settings',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('outbound_message_pricing', sa.Float(), nullable=True),
        sa.Column('monthly_message_count', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id')
    )
    op.create_index(op.f('ix_user_settings_id'), 'user_settings', ['id'])
    op.create_index(op.f('ix_user_settings_created_at'), 'user_settings', ['created_at'])

    op.create_table(
        'alert_records',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('alert_type', sa.String(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_alert_records_id'), 'alert_records', ['id'])
    op.create_index(op.f('ix_alert_records_created_at'), 'alert_records', ['created_at'])
    op.create_index('ix_alert_records_type_sent_at', 'alert_records', ['alert_type', 'sent_at'])

    op.create_table(
        'pool_resources',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('owner_user_id', sa.String(length=64), nullable=False, server_default='-1'),
        sa.Column('provider_account_id', sa.String(), nullable=False),
        sa.Column('provider_secret', sa.String(), nullable=False),
        sa.Column('country', sa.String(length=2), nullable=False),
        sa.Column('phone_number', sa.String(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='available'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_account_id'),
        sa.UniqueConstraint('phone_number')
    )
    op.create_index(op.f('ix_pool_resources_id'), 'pool_resources', ['id'])
    op.create_index(op.f('ix_pool_resources_created_at'), 'pool_resources', ['created_at'])
    op.create_index(op.f('ix_pool_resources_owner_user_id'), 'pool_resources', ['owner_user_id'])
    op.create_index('ix_pool_resources_status_country', 'pool_resources', ['status', 'country'])


def downgrade() -> None:
    """Drop the metering tables."""
    op.drop_table('pool_resources')
    op.drop_table('alert_records')
    op.drop_table('user_settings')
    op.drop_table('users')
