"""SQLAlchemy ORM models for the metering service."""
# Import all models here to ensure they are registered with Alembic

from metering.models.base import Base
from metering.models.user import User, UserSettings, SubscriptionTier
from metering.models.alert_record import AlertRecord
from metering.models.pool_resource import PoolResource, PoolResourceStatus, UNASSIGNED_OWNER

__all__ = [
    "Base",
    "User",
    "UserSettings",
    "SubscriptionTier",
    "AlertRecord",
    "PoolResource",
    "PoolResourceStatus",
    "UNASSIGNED_OWNER",
]
