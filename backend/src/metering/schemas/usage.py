"""Pydantic schemas for usage checks and deductions."""
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class UsageEvent(BaseModel):
    """A billable event for one user."""

    user_id: UUID = Field(..., description="User the event is billed to")
    event_type: str = Field(..., description="message, voice, noti_msg, noti_call or digest")
    quantity: int | None = Field(
        default=None,
        ge=0,
        description="Seconds for voice, message count for digest; ignored otherwise",
    )


class UsageCheckResponse(BaseModel):
    """Result of a sufficiency check."""

    user_id: UUID
    event_type: str
    allowed: bool = True


class UsageDeductResponse(BaseModel):
    """Result of a deduction."""

    user_id: UUID
    event_type: str
    balance: Literal["quota", "credits"] | None = Field(
        default=None, description="Balance the cost was drawn from; null when usage is not metered"
    )
    amount: float


class CostResponse(BaseModel):
    """Price of an event for a user."""

    user_id: UUID
    event_type: str
    region: str = Field(..., description="Pricing region, e.g. US_CA or INCLUDED")
    monetary: float = Field(..., description="Cost against the monetary balance")
    quota: float = Field(..., description="Cost against the monthly quota")


class BalanceResponse(BaseModel):
    """A user's balances."""

    id: UUID
    credits: float
    credits_left: float
    charge_when_under: bool
    charge_back_to: float | None

    model_config = ConfigDict(from_attributes=True)
