"""Automatic recharge of low monetary balances."""
import time
from typing import Protocol
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from metering.adapters.stripe_adapter import StripeAdapter
from metering.config import settings
from metering.exceptions import ChargeFailed, UserNotFound
from metering.metrics import auto_recharges_total
from metering.models.user import User
from metering.services.user_store import UserStore
from metering.utils.tasks import BackgroundTaskRunner

logger = structlog.get_logger(__name__)


class BillingCharger(Protocol):
    """Charges a user's stored payment method."""

    async def charge(self, user: User) -> float:
        """
        Charge the user's recharge amount.

        Returns:
            Amount to credit to the monetary balance; 0 when the charge
            was already credited by an earlier call

        Raises:
            ChargeFailed: If the payment was not completed
        """
        ...


class StripeBillingCharger:
    """Off-session Stripe charge for ``user.charge_back_to``."""

    def __init__(
        self,
        adapter: StripeAdapter | None = None,
        currency: str | None = None,
        default_amount: float | None = None,
    ):
        self.adapter = adapter or StripeAdapter()
        self.currency = currency or settings.recharge_currency
        self.default_amount = default_amount if default_amount is not None else settings.default_charge_back_to

    async def charge(self, user: User) -> float:
        if not user.stripe_customer_id:
            raise ChargeFailed(f"No Stripe customer ID found for user {user.id}")
        if not user.stripe_payment_method_id:
            raise ChargeFailed(f"No Stripe payment method found for user {user.id}")

        amount = user.charge_back_to if user.charge_back_to is not None else self.default_amount
        # Concurrent triggers within the same minute collapse into one Stripe charge
        idempotency_key = f"auto-recharge-{user.id}-{int(time.time() // 60)}"

        result = await self.adapter.create_off_session_payment(
            amount=round(amount * 100),
            currency=self.currency,
            customer_id=user.stripe_customer_id,
            payment_method_id=user.stripe_payment_method_id,
            idempotency_key=idempotency_key,
            metadata={"user_id": str(user.id), "reason": "auto_recharge"},
        )

        if result["status"] != "succeeded":
            raise ChargeFailed(
                f"Payment intent failed or requires action: {result.get('error') or result['status']}"
            )

        if result.get("replayed"):
            logger.info("auto_recharge_replayed", user_id=str(user.id), payment_intent_id=result["id"])
            return 0.0

        logger.info("auto_recharge_charged", user_id=str(user.id), amount=amount, payment_intent_id=result["id"])
        return amount


class AutoRechargeTrigger:
    """Schedules a detached charge when an opted-in user runs low."""

    def __init__(
        self,
        charger: BillingCharger,
        tasks: BackgroundTaskRunner,
        session_factory: async_sessionmaker,
        threshold: float | None = None,
    ):
        """
        Initialize the trigger.

        Args:
            charger: Payment collaborator
            tasks: Runner for the detached charge job
            session_factory: Session factory for the job's own transaction
            threshold: Credits balance below which a recharge is due
        """
        self.charger = charger
        self.tasks = tasks
        self.session_factory = session_factory
        self.threshold = threshold if threshold is not None else settings.charge_back_threshold

    def is_under_threshold(self, user: User) -> bool:
        return user.credits < self.threshold

    def maybe_schedule(self, user: User) -> bool:
        """
        Schedule a recharge if the user is opted in and under the threshold.

        Returns:
            True if a recharge job was submitted
        """
        if not (user.charge_when_under and self.is_under_threshold(user)):
            return False

        logger.info("auto_recharge_scheduled", user_id=str(user.id), credits=user.credits, threshold=self.threshold)
        user_id = user.id
        self.tasks.submit("auto_recharge", lambda: self.recharge(user_id), user_id=str(user_id))
        return True

    async def recharge(self, user_id: UUID) -> float:
        """
        Charge the user and credit the amount to their balance.

        Runs in its own session, detached from the request that triggered it.
        The user row is re-read; a user already topped up by an earlier job
        is not charged again.

        Returns:
            Amount credited (0 when nothing was charged)
        """
        async with self.session_factory() as db:
            store = UserStore(db)
            user = await store.find_by_id(user_id)
            if user is None:
                raise UserNotFound(user_id)

            if not (user.charge_when_under and self.is_under_threshold(user)):
                auto_recharges_total.labels(status="skipped").inc()
                logger.info("auto_recharge_not_needed", user_id=str(user_id), credits=user.credits)
                return 0.0

            try:
                amount = await self.charger.charge(user)
            except Exception:
                auto_recharges_total.labels(status="failed").inc()
                raise

            if amount <= 0:
                auto_recharges_total.labels(status="skipped").inc()
                return 0.0

            try:
                await store.increase_credits(user_id, amount)
                await db.commit()
            except Exception:
                await db.rollback()
                # Money was taken but not credited; needs manual reconciliation
                logger.critical("auto_recharge_credit_failed", user_id=str(user_id), amount=amount)
                raise

        auto_recharges_total.labels(status="succeeded").inc()
        logger.info("auto_recharge_completed", user_id=str(user_id), amount=amount)
        return amount
