"""Pydantic schemas for API request/response validation."""

from metering.schemas.error import ErrorCode, ErrorDetail, ErrorResponse
from metering.schemas.pool import PoolAssignRequest, PoolMaintenanceResult, PoolResource
from metering.schemas.usage import (
    BalanceResponse,
    CostResponse,
    UsageCheckResponse,
    UsageDeductResponse,
    UsageEvent,
)

__all__ = [
    "BalanceResponse",
    "CostResponse",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "PoolAssignRequest",
    "PoolMaintenanceResult",
    "PoolResource",
    "UsageCheckResponse",
    "UsageDeductResponse",
    "UsageEvent",
]
