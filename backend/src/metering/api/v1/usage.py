"""Usage metering API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from metering.api.deps import get_current_user, get_ledger
from metering.auth.rbac import Role, require_roles
from metering.exceptions import InsufficientCredits
from metering.schemas.usage import (
    BalanceResponse,
    CostResponse,
    UsageCheckResponse,
    UsageDeductResponse,
    UsageEvent,
)
from metering.services.ledger_service import BalanceLedger
from metering.services.pricing_service import region_for_phone

router = APIRouter(prefix="/usage", tags=["usage"])


@router.post("/check", response_model=UsageCheckResponse)
@require_roles(Role.SERVICE)
async def check_usage(
    event: UsageEvent,
    ledger: BalanceLedger = Depends(get_ledger),
    current_user: dict = Depends(get_current_user),
) -> UsageCheckResponse:
    """
    Check that a user can pay for an event before performing it.

    Responds 402 when neither the monthly quota nor the credits cover the
    event; the user is notified at most once a day.
    """
    user = await ledger.balance(event.user_id)
    try:
        await ledger.check_sufficient(user, event.event_type, event.quantity)
    except InsufficientCredits:
        # Persist the notification timestamp before rejecting
        await ledger.db.commit()
        raise
    await ledger.db.commit()

    return UsageCheckResponse(user_id=event.user_id, event_type=event.event_type, allowed=True)


@router.post("/deduct", response_model=UsageDeductResponse)
@require_roles(Role.SERVICE)
async def deduct_usage(
    event: UsageEvent,
    ledger: BalanceLedger = Depends(get_ledger),
    current_user: dict = Depends(get_current_user),
) -> UsageDeductResponse:
    """Charge a completed event to the quota first, then to credits."""
    deduction = await ledger.deduct(event.user_id, event.event_type, event.quantity)
    await ledger.db.commit()

    return UsageDeductResponse(
        user_id=event.user_id,
        event_type=event.event_type,
        balance=deduction.balance,
        amount=deduction.amount,
    )


@router.get("/cost", response_model=CostResponse)
@require_roles(Role.SERVICE)
async def get_cost(
    user_id: UUID = Query(..., description="User the event would be billed to"),
    event_type: str = Query(..., description="Event kind"),
    quantity: int | None = Query(default=None, ge=0, description="Seconds for voice, messages for digest"),
    ledger: BalanceLedger = Depends(get_ledger),
    current_user: dict = Depends(get_current_user),
) -> CostResponse:
    """Price an event for a user without touching any balance."""
    user = await ledger.balance(user_id)
    cost = await ledger.cost_for(user, event_type, quantity)

    return CostResponse(
        user_id=user_id,
        event_type=event_type,
        region=region_for_phone(user.phone_number).name,
        monetary=cost.monetary,
        quota=cost.quota,
    )


@router.get("/balance/{user_id}", response_model=BalanceResponse)
@require_roles(Role.SERVICE)
async def get_balance(
    user_id: UUID,
    ledger: BalanceLedger = Depends(get_ledger),
    current_user: dict = Depends(get_current_user),
) -> BalanceResponse:
    """Current quota and credits of a user."""
    user = await ledger.balance(user_id)
    return BalanceResponse.model_validate(user)
