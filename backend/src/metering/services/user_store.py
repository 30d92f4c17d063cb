"""Persistence accessors for user balances and settings."""
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metering.models.user import SubscriptionTier, User, UserSettings


class UserStore:
    """Reads and writes the user fields the ledger owns."""

    def __init__(self, db: AsyncSession):
        """Initialize user store with database session."""
        self.db = db

    async def find_by_id(self, user_id: UUID) -> User | None:
        """
        Load a user, bypassing any copy already held by the session.

        Args:
            user_id: User UUID

        Returns:
            User or None if not found
        """
        return await self.db.get(User, user_id, populate_existing=True)

    async def get_settings(self, user_id: UUID) -> UserSettings | None:
        result = await self.db.execute(
            select(UserSettings)
            .where(UserSettings.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_credits(self, user_id: UUID, credits: float) -> None:
        await self.db.execute(update(User).where(User.id == user_id).values(credits=credits))
        await self.db.flush()

    async def update_credits_left(self, user_id: UUID, credits_left: float) -> None:
        await self.db.execute(update(User).where(User.id == user_id).values(credits_left=credits_left))
        await self.db.flush()

    async def increase_credits(self, user_id: UUID, amount: float) -> None:
        """Add to the monetary balance in a single statement."""
        await self.db.execute(
            update(User).where(User.id == user_id).values(credits=User.credits + amount)
        )
        await self.db.flush()

    async def update_last_notification_ts(self, user_id: UUID, timestamp: int) -> None:
        await self.db.execute(
            update(User).where(User.id == user_id).values(last_credits_notification=timestamp)
        )
        await self.db.flush()

    async def get_monthly_message_count(self, user_id: UUID) -> int:
        result = await self.db.execute(
            select(UserSettings.monthly_message_count).where(UserSettings.user_id == user_id)
        )
        return result.scalar_one_or_none() or 0

    async def increment_monthly_message_count(self, user_id: UUID) -> int:
        """
        Increment the tier 3 monthly message counter.

        Returns:
            Counter value after the increment
        """
        await self.db.execute(
            update(UserSettings)
            .where(UserSettings.user_id == user_id)
            .values(monthly_message_count=UserSettings.monthly_message_count + 1)
        )
        await self.db.flush()
        return await self.get_monthly_message_count(user_id)

    async def reset_monthly_message_count(self, user_id: UUID) -> None:
        await self.db.execute(
            update(UserSettings).where(UserSettings.user_id == user_id).values(monthly_message_count=0)
        )
        await self.db.flush()

    async def list_tier3_user_ids(self) -> list[UUID]:
        result = await self.db.execute(select(User.id).where(User.sub_tier == SubscriptionTier.TIER_3))
        return list(result.scalars().all())
