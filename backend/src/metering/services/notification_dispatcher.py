"""Best-effort user notification delivery with bounded retries."""
import asyncio
from typing import Awaitable, Callable

import structlog

from metering.exceptions import NotificationDeliveryFailed
from metering.integrations.notification_service import NotificationChannel
from metering.metrics import notification_attempts_total, notifications_exhausted_total
from metering.models.user import User

logger = structlog.get_logger(__name__)

ErrorReporter = Callable[[User, str, BaseException], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class NotificationDispatcher:
    """Delivers messages to users, retrying with exponential backoff."""

    MAX_ATTEMPTS = 3
    BASE_DELAY_SECONDS = 0.5

    def __init__(
        self,
        channel: NotificationChannel,
        error_reporter: ErrorReporter | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize dispatcher.

        Args:
            channel: Delivery channel (SMS)
            error_reporter: Called once when every attempt has failed
            sleep: Awaitable sleep used between attempts
        """
        self.channel = channel
        self.error_reporter = error_reporter
        self._sleep = sleep

    async def send_with_retry(self, message: str, user: User, media_ref: str | None = None) -> str:
        """
        Send a message, retrying failed attempts.

        Waits 0.5s * 2**attempt between attempts (0.5s, then 1s); there is
        no wait after the final attempt.

        Args:
            message: Text to deliver
            user: Recipient
            media_ref: Optional media URL

        Returns:
            Delivery id from the channel

        Raises:
            NotificationDeliveryFailed: If all attempts failed
        """
        last_error: Exception | None = None

        for attempt in range(self.MAX_ATTEMPTS):
            try:
                delivery_id = await self.channel.send(user, message, media_ref)
            except Exception as exc:
                last_error = exc
                notification_attempts_total.labels(status="failed").inc()
                logger.warning(
                    "notification_attempt_failed",
                    user_id=str(user.id),
                    attempt=attempt + 1,
                    max_attempts=self.MAX_ATTEMPTS,
                    error=str(exc),
                )
                if attempt < self.MAX_ATTEMPTS - 1:
                    await self._sleep(self.BASE_DELAY_SECONDS * 2**attempt)
                continue

            notification_attempts_total.labels(status="delivered").inc()
            if attempt > 0:
                logger.info(
                    "notification_delivered_after_retry",
                    user_id=str(user.id),
                    attempts=attempt + 1,
                    delivery_id=delivery_id,
                )
            return delivery_id

        notifications_exhausted_total.inc()
        logger.critical(
            "notification_delivery_exhausted",
            user_id=str(user.id),
            attempts=self.MAX_ATTEMPTS,
            error=str(last_error),
        )
        if self.error_reporter is not None:
            try:
                await self.error_reporter(user, message, last_error)
            except Exception as exc:
                logger.exception("notification_error_report_failed", user_id=str(user.id), exc_info=exc)
        raise NotificationDeliveryFailed(self.MAX_ATTEMPTS, last_error) from last_error

    async def notify_user_of_error(self, user: User, message: str) -> None:
        """Send a message where the caller has no recourse; terminal failure is only logged."""
        try:
            await self.send_with_retry(message, user)
        except NotificationDeliveryFailed as exc:
            logger.error("user_error_notification_dropped", user_id=str(user.id), error=str(exc))
