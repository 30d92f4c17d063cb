"""Pydantic schemas for the number pool."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from metering.models.pool_resource import PoolResourceStatus


class PoolResource(BaseModel):
    """A pool unit; the provider secret is never returned."""

    id: UUID
    owner_user_id: str
    provider_account_id: str
    country: str
    phone_number: str
    status: PoolResourceStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PoolAssignRequest(BaseModel):
    country: str = Field(default="US", min_length=2, max_length=2, description="ISO 3166 alpha-2 country")


class PoolMaintenanceResult(BaseModel):
    """Outcome of a maintenance or cleanup run."""

    provisioned: int = 0
    released: int = 0
    available: int


class KeyRenewalRequest(BaseModel):
    """Usage reported by a self-hosted instance whose inference key ran out."""

    next_billing_at: int = Field(..., description="Next billing date in epoch seconds; the new key expires then")
    tokens_consumed: int = Field(default=0, ge=0, description="Tokens used with the previous key")


class KeyRenewalResponse(BaseModel):
    new_api_key: str
    expires_at: int
    message: str = "API key renewed successfully"
