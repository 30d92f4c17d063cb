"""Pool of pre-provisioned numbers for tier 3 users."""
import asyncio
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.adapters.key_issuer import KeyIssuer
from metering.adapters.provisioning import ProvisioningProvider
from metering.exceptions import NoActiveResource, PoolExhausted, ProvisioningError, ResourceNotFound
from metering.metrics import pool_available_gauge, pool_provisioned_total, pool_released_total
from metering.models.pool_resource import UNASSIGNED_OWNER, PoolResource, PoolResourceStatus
from metering.services.admin_alert_service import AdminAlertGate

logger = structlog.get_logger(__name__)

POOL_COUNTRY = "US"


class ResourcePool:
    """
    Keeps a buffer of available US numbers and recycles them on cancellation.

    Below ``LOW_WATERMARK`` available units the pool is topped up; above
    ``HIGH_WATERMARK`` the oldest units are released back down to
    ``LOW_WATERMARK``. Changes are flushed; the caller commits.
    """

    LOW_WATERMARK = 3
    HIGH_WATERMARK = 10

    def __init__(
        self,
        db: AsyncSession,
        provider: ProvisioningProvider,
        alerts: AdminAlertGate | None = None,
        key_issuer: KeyIssuer | None = None,
        lock: asyncio.Lock | None = None,
    ):
        """
        Initialize pool with database session.

        Args:
            db: Database session
            provider: Provisioning provider
            alerts: Admin alert gate for provisioning failures and key renewals
            key_issuer: Issuer of tier 3 inference API keys
            lock: Serializes buffer maintenance; share one per process
        """
        self.db = db
        self.provider = provider
        self.alerts = alerts
        self.key_issuer = key_issuer
        self._lock = lock or asyncio.Lock()

    async def count_available(self, country: str = POOL_COUNTRY) -> int:
        result = await self.db.execute(
            select(func.count(PoolResource.id)).where(
                PoolResource.status == PoolResourceStatus.AVAILABLE,
                PoolResource.country == country,
            )
        )
        count = result.scalar_one()
        pool_available_gauge.labels(country=country).set(count)
        return count

    async def get(self, resource_id: UUID) -> PoolResource:
        resource = await self.db.get(PoolResource, resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        return resource

    async def maintain_buffer(self) -> int:
        """
        Top the US pool up to the low watermark.

        A failed unit is logged and the remaining units are still attempted.
        Each row is written in its own savepoint; a unit bought at the
        provider but not stored is deleted there again.

        Returns:
            Number of units provisioned
        """
        async with self._lock:
            available = await self.count_available()
            if available >= self.LOW_WATERMARK:
                logger.info("pool_buffer_sufficient", available=available, low_watermark=self.LOW_WATERMARK)
                return 0

            needed = self.LOW_WATERMARK - available
            logger.info("pool_buffer_low", available=available, needed=needed)

            provisioned = 0
            errors: list[str] = []
            for i in range(needed):
                try:
                    account = await self.provider.create_subaccount_and_number(POOL_COUNTRY)
                except ProvisioningError as exc:
                    pool_provisioned_total.labels(status="failed").inc()
                    errors.append(str(exc))
                    logger.error("pool_provision_failed", unit=i + 1, needed=needed, error=str(exc))
                    continue

                try:
                    async with self.db.begin_nested():
                        self.db.add(
                            PoolResource(
                                owner_user_id=UNASSIGNED_OWNER,
                                provider_account_id=account.account_id,
                                provider_secret=account.secret,
                                country=account.country,
                                phone_number=account.phone_number,
                                status=PoolResourceStatus.AVAILABLE,
                            )
                        )
                except SQLAlchemyError as exc:
                    pool_provisioned_total.labels(status="failed").inc()
                    errors.append(f"{account.phone_number}: {exc}")
                    logger.error(
                        "pool_unit_store_failed",
                        unit=i + 1,
                        needed=needed,
                        account_id=account.account_id,
                        error=str(exc),
                    )
                    await self._discard_unstored(account.account_id)
                    continue

                provisioned += 1
                pool_provisioned_total.labels(status="succeeded").inc()
                logger.info("pool_unit_provisioned", unit=i + 1, needed=needed, phone_number=account.phone_number)

        pool_available_gauge.labels(country=POOL_COUNTRY).set(available + provisioned)
        if errors:
            await self._alert_provisioning_failures(needed, errors)
        return provisioned

    async def revoke(self, resource_id: UUID) -> PoolResource:
        """Rotate the unit's secret and return it to the pool."""
        resource = await self.get(resource_id)
        logger.info("pool_revoking", resource_id=str(resource_id), account_id=resource.provider_account_id)

        resource.provider_secret = await self.provider.rotate_secret(resource.provider_account_id)
        resource.api_key = None
        resource.owner_user_id = UNASSIGNED_OWNER
        resource.status = PoolResourceStatus.AVAILABLE
        await self.db.flush()

        logger.info("pool_revoked", resource_id=str(resource_id), account_id=resource.provider_account_id)
        return resource

    async def release(self, resource_id: UUID, reason: str = "cancellation") -> None:
        """Delete the unit at the provider, then its row."""
        resource = await self.get(resource_id)
        logger.info(
            "pool_releasing",
            resource_id=str(resource_id),
            account_id=resource.provider_account_id,
            country=resource.country,
            reason=reason,
        )

        try:
            await self.provider.delete_subaccount(resource.provider_account_id)
        except ProvisioningError:
            pool_released_total.labels(reason=reason, status="failed").inc()
            raise

        await self.db.delete(resource)
        await self.db.flush()
        pool_released_total.labels(reason=reason, status="succeeded").inc()
        logger.info("pool_released", resource_id=str(resource_id), reason=reason)

    async def cleanup_excess(self) -> int:
        """
        Release the oldest available US units when above the high watermark.

        Returns:
            Number of units released
        """
        available = await self.count_available()
        if available <= self.HIGH_WATERMARK:
            logger.info("pool_cleanup_not_needed", available=available, high_watermark=self.HIGH_WATERMARK)
            return 0

        to_release = available - self.LOW_WATERMARK
        result = await self.db.execute(
            select(PoolResource.id)
            .where(
                PoolResource.status == PoolResourceStatus.AVAILABLE,
                PoolResource.country == POOL_COUNTRY,
            )
            .order_by(PoolResource.created_at.asc())
            .limit(to_release)
        )
        oldest = list(result.scalars().all())
        logger.info("pool_cleanup_started", available=available, releasing=len(oldest))

        released = 0
        for resource_id in oldest:
            try:
                await self.release(resource_id, reason="cleanup")
            except ProvisioningError as exc:
                logger.error("pool_cleanup_release_failed", resource_id=str(resource_id), error=str(exc))
                continue
            released += 1

        pool_available_gauge.labels(country=POOL_COUNTRY).set(available - released)
        return released

    async def handle_tier3_cancellation(self, user_id: UUID | str) -> None:
        """
        Recycle or release the number of a user whose tier 3 plan ended.

        US units go back to the pool (followed by cleanup when the pool is
        over the high watermark); any other country is released outright.

        Raises:
            NoActiveResource: The user holds no assigned unit
        """
        resource = await self._assigned_to(user_id)
        if resource is None:
            raise NoActiveResource(user_id)

        logger.info(
            "tier3_cancellation",
            user_id=str(user_id),
            resource_id=str(resource.id),
            country=resource.country,
        )

        if resource.country == POOL_COUNTRY:
            await self.revoke(resource.id)
            if await self.count_available() > self.HIGH_WATERMARK:
                await self.cleanup_excess()
        else:
            await self.release(resource.id, reason="cancellation")

    async def assign(self, user_id: UUID | str, country: str = POOL_COUNTRY) -> PoolResource:
        """
        Hand an available unit of ``country`` to the user.

        A user who already holds a unit gets that unit back.

        Raises:
            PoolExhausted: No available unit for the country
        """
        existing = await self._assigned_to(user_id)
        if existing is not None:
            return existing

        result = await self.db.execute(
            select(PoolResource)
            .where(
                PoolResource.status == PoolResourceStatus.AVAILABLE,
                PoolResource.country == country,
            )
            .order_by(PoolResource.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        resource = result.scalar_one_or_none()
        if resource is None:
            logger.warning("pool_exhausted", user_id=str(user_id), country=country)
            raise PoolExhausted(country)

        resource.owner_user_id = str(user_id)
        resource.status = PoolResourceStatus.ASSIGNED
        await self.db.flush()

        logger.info("pool_assigned", user_id=str(user_id), resource_id=str(resource.id), country=country)
        return resource

    async def regenerate_key(self, user_id: UUID | str, expires_at: int) -> str:
        """
        Issue a fresh inference API key for the unit held by the user.

        Args:
            user_id: Owner of the unit
            expires_at: Key expiry in epoch seconds (the next billing date)

        Returns:
            The new key

        Raises:
            NoActiveResource: The user holds no assigned unit
            ProvisioningError: No issuer is configured or the issuer failed
        """
        resource = await self._assigned_to(user_id)
        if resource is None:
            raise NoActiveResource(user_id)
        if self.key_issuer is None:
            raise ProvisioningError("No API key issuer configured")

        resource.api_key = await self.key_issuer.issue(str(user_id), expires_at)
        await self.db.flush()

        logger.info(
            "pool_api_key_regenerated", user_id=str(user_id), resource_id=str(resource.id), expires_at=expires_at
        )
        return resource.api_key

    async def notify_key_renewal(
        self, user_id: UUID | str, email: str, days_until_renewal: int, tokens_consumed: int
    ) -> None:
        """Tell the admin about a renewal so the monthly token limit can be reviewed."""
        if self.alerts is None:
            return
        # Days of the current billing cycle already used up, at least one
        days_elapsed = 1 if days_until_renewal >= 30 else 30 - days_until_renewal
        body = (
            "Inference API Key Renewal Request\n"
            "=================================\n\n"
            f"User ID: {user_id}\n"
            f"User Email: {email}\n"
            f"Days Until Next Billing: {days_until_renewal}\n"
            f"Days Since Last Renewal: {days_elapsed}\n"
            f"Total Tokens Consumed: {tokens_consumed}\n"
            f"Average Tokens/Day: {tokens_consumed // days_elapsed}\n\n"
            "A new inference API key has been automatically generated for this user.\n"
            "Please review these usage statistics to determine if the monthly token limit should be adjusted.\n"
        )
        await self.alerts.send_admin_alert(f"API Key Renewal - User {user_id}", body)

    async def _assigned_to(self, user_id: UUID | str) -> PoolResource | None:
        result = await self.db.execute(
            select(PoolResource)
            .where(
                PoolResource.owner_user_id == str(user_id),
                PoolResource.status == PoolResourceStatus.ASSIGNED,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _discard_unstored(self, account_id: str) -> None:
        try:
            await self.provider.delete_subaccount(account_id)
        except ProvisioningError as exc:
            # Orphaned at the provider until removed by hand
            logger.critical("pool_unit_orphaned", account_id=account_id, error=str(exc))

    async def _alert_provisioning_failures(self, needed: int, errors: list[str]) -> None:
        if self.alerts is None:
            return
        body = (
            f"Pool buffer maintenance could not provision {len(errors)} of {needed} {POOL_COUNTRY} numbers.\n\n"
            + "\n".join(f"- {error}" for error in errors)
        )
        try:
            await self.alerts.send_admin_alert(f"Number Pool Provisioning Failed - {POOL_COUNTRY}", body)
        except Exception as exc:
            logger.error("pool_provisioning_alert_failed", error=str(exc))
