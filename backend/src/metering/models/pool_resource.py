"""Pre-provisioned phone number + sub-account pairs."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, Index, String

from metering.models.base import Base

# Owner marker for resources sitting in the pool
UNASSIGNED_OWNER = "-1"


class PoolResourceStatus(enum.Enum):
    """Pool resource status."""

    AVAILABLE = "available"
    ASSIGNED = "assigned"


class PoolResource(Base):
    """
    A provider sub-account holding exactly one phone number.

    ``status`` is AVAILABLE exactly when ``owner_user_id`` is ``"-1"``.
    """

    __tablename__ = "pool_resources"
    __table_args__ = (Index("ix_pool_resources_status_country", "status", "country"),)

    owner_user_id = Column(String(64), nullable=False, default=UNASSIGNED_OWNER, index=True)
    provider_account_id = Column(String, nullable=False, unique=True)
    provider_secret = Column(String, nullable=False)
    country = Column(String(2), nullable=False)  # ISO 3166 alpha-2
    phone_number = Column(String, nullable=False, unique=True)
    api_key = Column(String, nullable=True)  # Inference key of the tier 3 owner
    status = Column(
        SQLEnum(
            PoolResourceStatus,
            values_callable=lambda statuses: [s.value for s in statuses],
            native_enum=False,
            length=16,
        ),
        nullable=False,
        default=PoolResourceStatus.AVAILABLE,
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<PoolResource(id={self.id}, number={self.phone_number}, "
            f"country={self.country}, status={self.status.value})>"
        )
