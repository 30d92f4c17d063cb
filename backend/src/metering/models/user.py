"""User and per-user settings models relevant to metering."""
import enum

from sqlalchemy import Boolean, Column, Enum as SQLEnum, Float, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import relationship

from metering.models.base import Base


class SubscriptionTier(enum.Enum):
    """Paid subscription tiers."""

    TIER_2 = "tier 2"
    TIER_3 = "tier 3"


class User(Base):
    """
    End user with two balances.

    ``credits`` is the prepaid monetary balance, ``credits_left`` the
    count-based quota replenished every billing cycle.
    """

    __tablename__ = "users"

    email = Column(String, nullable=False, index=True)
    phone_number = Column(String, nullable=False, index=True)  # E.164, decides the pricing region
    credits = Column(Float, nullable=False, default=0.0)
    credits_left = Column(Float, nullable=False, default=0.0)
    sub_tier = Column(
        SQLEnum(
            SubscriptionTier,
            values_callable=lambda tiers: [t.value for t in tiers],
            native_enum=False,
            length=16,
        ),
        nullable=True,
    )
    charge_when_under = Column(Boolean, nullable=False, default=False)
    charge_back_to = Column(Float, nullable=True)  # Recharge amount
    stripe_customer_id = Column(String, nullable=True)
    stripe_payment_method_id = Column(String, nullable=True)
    last_credits_notification = Column(Integer, nullable=True)  # Epoch seconds

    settings = relationship("UserSettings", back_populates="user", uselist=False, cascade="all, delete-orphan")

    @property
    def is_tier3(self) -> bool:
        return self.sub_tier == SubscriptionTier.TIER_3

    def __repr__(self) -> str:
        """String representation."""
        return f"<User(id={self.id}, credits={self.credits}, credits_left={self.credits_left})>"


class UserSettings(Base):
    """Per-user settings read by the ledger."""

    __tablename__ = "user_settings"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    outbound_message_pricing = Column(Float, nullable=True)  # Tier 3 per-message price override
    monthly_message_count = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="settings")

    def __repr__(self) -> str:
        """String representation."""
        return f"<UserSettings(user_id={self.user_id}, monthly_message_count={self.monthly_message_count})>"
