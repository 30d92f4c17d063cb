"""Rate-limited operational alerts to the human operator."""
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering.integrations.mailbox import MailboxReader
from metering.integrations.notification_service import AdminChannel
from metering.metrics import admin_alerts_total
from metering.models.alert_record import AlertRecord
from metering.utils.clock import utcnow

logger = structlog.get_logger(__name__)

COOLDOWN_HOURS = 6
OPT_OUT_SCAN_LIMIT = 10
OPT_OUT_KEYWORDS = ("disable", "stop", "unsubscribe", "mute")


class AlertLog:
    """Append-only alert history."""

    def __init__(self, db: AsyncSession):
        """Initialize alert log with database session."""
        self.db = db

    async def has_recent(self, alert_type: str, cooldown_seconds: int, now: datetime) -> bool:
        """Whether an alert of this type was sent within the cooldown window."""
        cutoff = now - timedelta(seconds=cooldown_seconds)
        result = await self.db.execute(
            select(AlertRecord.id)
            .where(AlertRecord.alert_type == alert_type, AlertRecord.sent_at > cutoff)
            .order_by(AlertRecord.sent_at.desc())
            .limit(1)
        )
        return result.first() is not None

    async def record(self, alert_type: str, sent_at: datetime, success: bool) -> AlertRecord:
        record = AlertRecord(alert_type=alert_type, sent_at=sent_at, success=success)
        self.db.add(record)
        await self.db.flush()
        return record


class AdminAlertGate:
    """
    Sends alerts to the admin address with a per-subject cooldown.

    The subject doubles as the alert type. An alert is suppressed while a
    previous alert of the same type is younger than ``COOLDOWN_HOURS``, or
    when the admin replied to an earlier alert asking to disable it.
    """

    def __init__(
        self,
        channel: AdminChannel,
        session_factory: async_sessionmaker,
        admin_email: str,
        mailbox: MailboxReader | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.channel = channel
        self.session_factory = session_factory
        self.admin_email = admin_email
        self.mailbox = mailbox
        self._clock = clock

    async def send_admin_alert(self, subject: str, body: str) -> bool:
        """
        Send an alert unless it is cooling down or muted.

        Args:
            subject: Email subject, also used as the alert type
            body: Alert text

        Returns:
            True if an email was sent, False if it was suppressed

        Raises:
            Exception: Whatever the admin channel raised; no record is written
        """
        if not self.admin_email:
            admin_alerts_total.labels(outcome="disabled").inc()
            logger.warning("admin_alert_skipped_no_recipient", subject=subject)
            return False

        now = self._clock()
        cooldown_seconds = COOLDOWN_HOURS * 3600

        async with self.session_factory() as db:
            alert_log = AlertLog(db)

            try:
                in_cooldown = await alert_log.has_recent(subject, cooldown_seconds, now)
            except Exception as exc:
                logger.warning("admin_alert_cooldown_check_failed", subject=subject, error=str(exc))
                in_cooldown = False

            if in_cooldown:
                admin_alerts_total.labels(outcome="cooldown").inc()
                logger.debug("admin_alert_in_cooldown", subject=subject, cooldown_hours=COOLDOWN_HOURS)
                return False

            if await self._admin_opted_out(subject):
                admin_alerts_total.labels(outcome="opted_out").inc()
                logger.info("admin_alert_opted_out", subject=subject)
                return False

            message = (
                f"{body}\n\n"
                "---\n"
                "To disable future alerts of this type, reply to this email with the word 'disable'.\n"
                f"This alert has a {COOLDOWN_HOURS}-hour cooldown to prevent spam."
            )

            try:
                await self.channel.send_email(self.admin_email, subject, message)
            except Exception as exc:
                admin_alerts_total.labels(outcome="failed").inc()
                logger.error("admin_alert_send_failed", subject=subject, error=str(exc))
                raise

            admin_alerts_total.labels(outcome="sent").inc()
            logger.info("admin_alert_sent", subject=subject)

            try:
                await alert_log.record(subject, now, success=True)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.warning("admin_alert_record_failed", subject=subject, error=str(exc))

        return True

    async def _admin_opted_out(self, subject: str) -> bool:
        if self.mailbox is None:
            return False

        try:
            mails = await self.mailbox.recent_inbound(OPT_OUT_SCAN_LIMIT)
        except Exception as exc:
            logger.debug("admin_alert_reply_scan_failed", subject=subject, error=str(exc))
            return False

        for mail in mails:
            if subject not in mail.subject:
                continue
            snippet = mail.snippet.lower()
            if any(keyword in snippet for keyword in OPT_OUT_KEYWORDS):
                return True
        return False
