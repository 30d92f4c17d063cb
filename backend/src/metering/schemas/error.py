"""Structured error response schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from metering.utils.clock import utcnow


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure."""

    error: str = Field(..., description="Error type (e.g., 'InsufficientCredits', 'NotFound')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Detailed error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=utcnow, description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "InsufficientCredits",
                "message": "Insufficient credits. You have used all your monthly quota "
                "and don't have enough extra credits.",
                "details": [{"code": "insufficient_credits", "message": "Recharge to continue"}],
                "remediation": "Recharge credits or wait for the monthly quota to reset",
                "request_id": "req_1234567890",
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }
    )


class ErrorCode:
    """Standard error codes used across the API."""

    # 400
    INVALID_EVENT_TYPE = "invalid_event_type"
    VALIDATION_ERROR = "validation_error"

    # 402
    INSUFFICIENT_CREDITS = "insufficient_credits"

    # 403
    TIER_NOT_ELIGIBLE = "tier_not_eligible"

    # 404
    USER_NOT_FOUND = "user_not_found"
    RESOURCE_NOT_FOUND = "resource_not_found"

    # 409
    NO_ACTIVE_RESOURCE = "no_active_resource"
    POOL_EXHAUSTED = "pool_exhausted"

    # 500, 502, 503
    PERSISTENCE_ERROR = "persistence_error"
    PROVISIONING_ERROR = "provisioning_error"
    NOTIFICATION_FAILED = "notification_failed"
    DATABASE_ERROR = "database_error"
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.INVALID_EVENT_TYPE: "Use one of: message, voice, noti_msg, noti_call, digest",
    ErrorCode.INSUFFICIENT_CREDITS: "Recharge credits or wait for the monthly quota to reset",
    ErrorCode.USER_NOT_FOUND: "Verify the user ID is correct and the user exists",
    ErrorCode.TIER_NOT_ELIGIBLE: "Upgrade to tier 3 to use self-hosted features",
    ErrorCode.POOL_EXHAUSTED: "Run pool maintenance or provision a number for this country",
    ErrorCode.PERSISTENCE_ERROR: "The usage was not recorded. Retry or reconcile the user's balance manually.",
    ErrorCode.PROVISIONING_ERROR: "The telephony provider is unavailable. Please try again later.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
