"""Number pool administration endpoints."""
import time
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from metering.api.deps import get_current_user, get_pool, get_services
from metering.auth.rbac import Role, require_roles
from metering.exceptions import TierNotEligible, UserNotFound
from metering.schemas.pool import (
    KeyRenewalRequest,
    KeyRenewalResponse,
    PoolAssignRequest,
    PoolMaintenanceResult,
    PoolResource,
)
from metering.services.container import Services
from metering.services.pool_service import ResourcePool
from metering.services.user_store import UserStore

router = APIRouter(prefix="/pool", tags=["pool"])


@router.post("/maintain", response_model=PoolMaintenanceResult)
@require_roles(Role.ADMIN)
async def maintain_pool(
    pool: ResourcePool = Depends(get_pool),
    current_user: dict = Depends(get_current_user),
) -> PoolMaintenanceResult:
    """Top the US pool up to its low watermark."""
    provisioned = await pool.maintain_buffer()
    await pool.db.commit()
    return PoolMaintenanceResult(provisioned=provisioned, available=await pool.count_available())


@router.post("/cleanup", response_model=PoolMaintenanceResult)
@require_roles(Role.ADMIN)
async def cleanup_pool(
    pool: ResourcePool = Depends(get_pool),
    current_user: dict = Depends(get_current_user),
) -> PoolMaintenanceResult:
    """Release the oldest available US numbers when above the high watermark."""
    released = await pool.cleanup_excess()
    await pool.db.commit()
    return PoolMaintenanceResult(released=released, available=await pool.count_available())


@router.post("/assign/{user_id}", response_model=PoolResource)
@require_roles(Role.SERVICE)
async def assign_number(
    user_id: UUID,
    request: PoolAssignRequest,
    pool: ResourcePool = Depends(get_pool),
    current_user: dict = Depends(get_current_user),
) -> PoolResource:
    """Hand an available number to a tier 3 user."""
    resource = await pool.assign(user_id, request.country)
    await pool.db.commit()
    return PoolResource.model_validate(resource)


@router.post("/cancel/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
@require_roles(Role.SERVICE)
async def cancel_number(
    user_id: UUID,
    pool: ResourcePool = Depends(get_pool),
    current_user: dict = Depends(get_current_user),
) -> Response:
    """Recycle (US) or release (other countries) the number of a cancelled tier 3 user."""
    await pool.handle_tier3_cancellation(user_id)
    await pool.db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/renew-key/{user_id}", response_model=KeyRenewalResponse)
@require_roles(Role.SERVICE)
async def renew_api_key(
    user_id: UUID,
    request: KeyRenewalRequest,
    pool: ResourcePool = Depends(get_pool),
    services: Services = Depends(get_services),
    current_user: dict = Depends(get_current_user),
) -> KeyRenewalResponse:
    """Issue a new inference API key to a tier 3 user and notify the admin."""
    user = await UserStore(pool.db).find_by_id(user_id)
    if user is None:
        raise UserNotFound(user_id)
    if not user.is_tier3:
        raise TierNotEligible(user_id, "API key renewal")

    email = user.email
    days_until_renewal = max(0, (request.next_billing_at - int(time.time())) // 86400)
    new_key = await pool.regenerate_key(user_id, request.next_billing_at)
    await pool.db.commit()

    services.tasks.submit(
        "key_renewal_alert",
        lambda: pool.notify_key_renewal(user_id, email, days_until_renewal, request.tokens_consumed),
        user_id=str(user_id),
    )
    return KeyRenewalResponse(new_api_key=new_key, expires_at=request.next_billing_at)
