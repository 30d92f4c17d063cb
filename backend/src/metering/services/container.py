"""Process-wide collaborators shared by the API and the workers."""
import asyncio
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering.adapters.key_issuer import KeyIssuer, get_key_issuer
from metering.adapters.provisioning import ProvisioningProvider, get_provisioning_provider
from metering.config import Settings, settings as default_settings
from metering.integrations.mailbox import ImapMailboxReader
from metering.integrations.notification_service import NotificationService
from metering.models.user import User
from metering.services.admin_alert_service import AdminAlertGate
from metering.services.ledger_service import BalanceLedger
from metering.services.notification_dispatcher import NotificationDispatcher
from metering.services.pool_service import ResourcePool
from metering.services.recharge_service import AutoRechargeTrigger, StripeBillingCharger
from metering.utils.tasks import BackgroundTaskRunner

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Long-lived collaborators; request-scoped services are built from these."""

    tasks: BackgroundTaskRunner
    dispatcher: NotificationDispatcher
    alerts: AdminAlertGate
    recharge: AutoRechargeTrigger
    provider: ProvisioningProvider
    key_issuer: KeyIssuer | None = None
    # One per process; maintenance runs are serialized across requests
    pool_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def ledger(self, db: AsyncSession) -> BalanceLedger:
        return BalanceLedger(
            db,
            dispatcher=self.dispatcher,
            recharge=self.recharge,
            alerts=self.alerts,
            tasks=self.tasks,
        )

    def pool(self, db: AsyncSession) -> ResourcePool:
        return ResourcePool(db, self.provider, alerts=self.alerts, key_issuer=self.key_issuer, lock=self.pool_lock)


def build_services(session_factory: async_sessionmaker, settings: Settings | None = None) -> Services:
    """
    Wire the collaborators from configuration.

    Args:
        session_factory: Factory for sessions owned by detached jobs
        settings: Application settings (defaults to the global settings)
    """
    settings = settings or default_settings
    tasks = BackgroundTaskRunner(max_concurrency=settings.background_task_concurrency)
    notifications = NotificationService(settings)

    alerts = AdminAlertGate(
        channel=notifications,
        session_factory=session_factory,
        admin_email=settings.admin_alert_email,
        mailbox=ImapMailboxReader.from_settings(settings),
    )

    async def report_undeliverable(user: User, message: str, error: BaseException) -> None:
        await alerts.send_admin_alert(
            f"Notification Delivery Failed - User {user.id}",
            f"A notification to user {user.id} could not be delivered.\n\n"
            f"Message: {message}\n"
            f"Last error: {error}\n",
        )

    dispatcher = NotificationDispatcher(notifications, error_reporter=report_undeliverable)
    recharge = AutoRechargeTrigger(
        StripeBillingCharger(),
        tasks=tasks,
        session_factory=session_factory,
        threshold=settings.charge_back_threshold,
    )

    logger.info(
        "services_built",
        provisioning_mode=settings.provisioning_mode,
        key_issuer_mode=settings.key_issuer_mode,
        notification_mock_mode=settings.notification_mock_mode,
        admin_alerts_enabled=bool(settings.admin_alert_email),
    )
    return Services(
        tasks=tasks,
        dispatcher=dispatcher,
        alerts=alerts,
        recharge=recharge,
        provider=get_provisioning_provider(settings),
        key_issuer=get_key_issuer(settings),
    )
