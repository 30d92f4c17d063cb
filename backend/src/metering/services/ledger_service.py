"""Balance checks and deductions for metered usage events."""
import time
from typing import Callable, Literal, NamedTuple
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.exceptions import InsufficientCredits, PersistenceError, UserNotFound
from metering.metrics import credits_deducted_total, deduction_failures_total, usage_events_total
from metering.models.user import User, UserSettings
from metering.services.admin_alert_service import AdminAlertGate
from metering.services.notification_dispatcher import NotificationDispatcher
from metering.services.pricing_service import EventType, UsageCost, calculate_cost, region_for_phone
from metering.services.recharge_service import AutoRechargeTrigger
from metering.services.user_store import UserStore
from metering.tracing import get_tracer
from metering.utils.tasks import BackgroundTaskRunner

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

DEPLETED_NOTICE = (
    "Your credits and monthly quota have been depleted. "
    "Please recharge your credits to continue using the service."
)


class Deduction(NamedTuple):
    """Outcome of a deduction."""

    balance: Literal["quota", "credits"] | None  # None when usage is not metered
    amount: float


class BalanceLedger:
    """
    Reads and mutates a user's quota and monetary balances.

    ``check_sufficient`` runs before a billable action and ``deduct`` after
    it. The two are not atomic: concurrent events for one user can both pass
    the check against the same balance. Deductions clamp at zero.
    """

    TIER3_ALERT_THRESHOLD = 1000
    NOTIFICATION_INTERVAL_SECONDS = 24 * 3600

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        recharge: AutoRechargeTrigger,
        alerts: AdminAlertGate,
        tasks: BackgroundTaskRunner,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize ledger with database session and collaborators.

        Args:
            db: Database session of the calling request
            dispatcher: User notification delivery
            recharge: Auto-recharge trigger
            alerts: Admin alert gate
            tasks: Runner for detached side effects
            clock: Returns the current epoch time in seconds
        """
        self.db = db
        self.users = UserStore(db)
        self.dispatcher = dispatcher
        self.recharge = recharge
        self.alerts = alerts
        self.tasks = tasks
        self._clock = clock

    async def cost_for(self, user: User, event_type: str | EventType, quantity: int | None = None) -> UsageCost:
        """Price an event for this user, applying the tier 3 message price override."""
        settings = await self._tier3_settings(user)
        override = settings.outbound_message_pricing if settings is not None else None
        return calculate_cost(region_for_phone(user.phone_number), event_type, quantity, override)

    async def check_sufficient(self, user: User, event_type: str | EventType, quantity: int | None = None) -> None:
        """
        Verify the user can pay for an event.

        The balances are alternatives: either the quota or the monetary
        balance must be non-negative and cover its own cost.

        Args:
            user: User snapshot held by the caller
            event_type: Event kind
            quantity: Seconds for voice, messages for digest

        Raises:
            InvalidEventType: Unknown event kind
            InsufficientCredits: Neither balance covers the event
        """
        event = EventType.parse(event_type)
        region = region_for_phone(user.phone_number)
        if not region.is_metered:
            usage_events_total.labels(event_type=event.value, region=region.name, outcome="included").inc()
            return

        cost = await self.cost_for(user, event, quantity)
        quota_ok = user.credits_left >= 0 and user.credits_left >= cost.quota
        credits_ok = user.credits >= 0 and user.credits >= cost.monetary

        self.recharge.maybe_schedule(user)

        if quota_ok or credits_ok:
            usage_events_total.labels(event_type=event.value, region=region.name, outcome="allowed").inc()
            return

        usage_events_total.labels(event_type=event.value, region=region.name, outcome="rejected").inc()
        logger.info(
            "insufficient_credits",
            user_id=str(user.id),
            event_type=event.value,
            credits=user.credits,
            credits_left=user.credits_left,
            monetary_cost=cost.monetary,
            quota_cost=cost.quota,
        )

        if event is not EventType.DIGEST:
            await self._notify_depleted(user)
        raise InsufficientCredits(user.id)

    async def deduct(self, user_id: UUID, event_type: str | EventType, quantity: int | None = None) -> Deduction:
        """
        Charge a completed event to the user's balances.

        Quota is spent first when it covers the whole quota cost; otherwise
        the monetary balance pays. Events with no quota cost (voice) always
        draw from the monetary balance. Results are clamped at zero.

        Args:
            user_id: User UUID; the user is re-read, never taken from the caller
            event_type: Event kind
            quantity: Seconds for voice, messages for digest

        Returns:
            Which balance was drawn and by how much

        Raises:
            InvalidEventType: Unknown event kind
            UserNotFound: User does not exist
            PersistenceError: Balance write failed
        """
        event = EventType.parse(event_type)

        with tracer.start_as_current_span("ledger.deduct") as span:
            span.set_attribute("metering.event_type", event.value)

            try:
                user = await self.users.find_by_id(user_id)
            except SQLAlchemyError as exc:
                logger.error("deduct_user_lookup_failed", user_id=str(user_id), error=str(exc))
                raise PersistenceError("Database error occurred") from exc
            if user is None:
                raise UserNotFound(user_id)

            region = region_for_phone(user.phone_number)
            if not region.is_metered:
                return Deduction(balance=None, amount=0.0)

            settings = await self._tier3_settings(user)
            override = settings.outbound_message_pricing if settings is not None else None
            cost = calculate_cost(region, event, quantity, override)

            try:
                if cost.quota > 0 and user.credits_left >= cost.quota:
                    await self.users.update_credits_left(user.id, max(0.0, user.credits_left - cost.quota))
                    deduction = Deduction(balance="quota", amount=cost.quota)
                else:
                    await self.users.update_credits(user.id, max(0.0, user.credits - cost.monetary))
                    deduction = Deduction(balance="credits", amount=cost.monetary)
            except SQLAlchemyError as exc:
                deduction_failures_total.inc()
                logger.error(
                    "deduct_write_failed",
                    user_id=str(user_id),
                    event_type=event.value,
                    error=str(exc),
                )
                raise PersistenceError("Failed to process credits") from exc

            credits_deducted_total.labels(event_type=event.value, balance=deduction.balance).inc()
            span.set_attribute("metering.balance", deduction.balance)
            logger.info(
                "credits_deducted",
                user_id=str(user_id),
                event_type=event.value,
                balance=deduction.balance,
                amount=deduction.amount,
            )

            if user.is_tier3 and event is EventType.MESSAGE and settings is not None:
                await self._track_tier3_message(user, settings.monthly_message_count)

            return deduction

    async def balance(self, user_id: UUID) -> User:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def reset_monthly_message_counts(self) -> int:
        """Reset the tier 3 message counters at the start of a billing period."""
        user_ids = await self.users.list_tier3_user_ids()
        for user_id in user_ids:
            await self.users.reset_monthly_message_count(user_id)
        logger.info("monthly_message_counts_reset", users=len(user_ids))
        return len(user_ids)

    async def _tier3_settings(self, user: User) -> UserSettings | None:
        if not user.is_tier3:
            return None
        try:
            return await self.users.get_settings(user.id)
        except SQLAlchemyError as exc:
            logger.error("tier3_settings_lookup_failed", user_id=str(user.id), error=str(exc))
            return None

    async def _notify_depleted(self, user: User) -> None:
        now = int(self._clock())
        last = user.last_credits_notification
        if last is not None and now - last < self.NOTIFICATION_INTERVAL_SECONDS:
            return

        try:
            await self.users.update_last_notification_ts(user.id, now)
        except SQLAlchemyError as exc:
            logger.error("credits_notification_stamp_failed", user_id=str(user.id), error=str(exc))

        self.tasks.submit(
            "credits_depleted_notice",
            lambda: self.dispatcher.notify_user_of_error(user, DEPLETED_NOTICE),
            user_id=str(user.id),
        )

    async def _track_tier3_message(self, user: User, previous_count: int) -> None:
        try:
            count = await self.users.increment_monthly_message_count(user.id)
        except SQLAlchemyError as exc:
            logger.error("monthly_message_count_increment_failed", user_id=str(user.id), error=str(exc))
            return

        if previous_count < self.TIER3_ALERT_THRESHOLD <= count:
            logger.warning("tier3_message_threshold_reached", user_id=str(user.id), count=count)
            subject = f"Tier 3 Usage Alert - User {user.id} - {self.TIER3_ALERT_THRESHOLD} Messages"
            body = (
                f"Tier 3 Usage Alert - {self.TIER3_ALERT_THRESHOLD} Messages Reached\n"
                "==========================================\n\n"
                f"User ID: {user.id}\n"
                f"User Email: {user.email}\n"
                f"Monthly Message Count: {count}\n\n"
                f"This tier 3 self-hosted user has reached {self.TIER3_ALERT_THRESHOLD} outbound messages this month.\n"
                "This is a monitoring alert to track usage patterns.\n"
            )
            self.tasks.submit(
                "tier3_usage_alert",
                lambda: self.alerts.send_admin_alert(subject, body),
                user_id=str(user.id),
            )
