"""Domain errors raised by the metering services.

Business conditions (``InsufficientCredits``, ``NoActiveResource``,
``PoolExhausted``) are expected and rendered to end users by the caller.
Infrastructure failures (``PersistenceError``, ``ProvisioningError``,
``NotificationDeliveryFailed``) carry the underlying cause via ``__cause__``.
"""


class MeteringError(Exception):
    """Base class for all metering errors."""


class InvalidEventType(MeteringError, ValueError):
    """An unrecognized usage event kind was passed."""

    def __init__(self, event_type: object):
        self.event_type = event_type
        super().__init__(f"Invalid event type: {event_type!r}")


class InsufficientCredits(MeteringError):
    """Neither the quota nor the monetary balance covers the event."""

    def __init__(self, user_id: object):
        self.user_id = user_id
        super().__init__(
            "Insufficient credits. You have used all your monthly quota "
            "and don't have enough extra credits."
        )


class UserNotFound(MeteringError):
    """The referenced user does not exist."""

    def __init__(self, user_id: object):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class DeductionError(MeteringError):
    """A deduction could not be recorded."""


class PersistenceError(DeductionError):
    """Database write failed while processing credits."""


class NotificationDeliveryFailed(MeteringError):
    """All delivery attempts for a notification failed."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Notification delivery failed after {attempts} attempts: {last_error}")


class ProvisioningError(MeteringError):
    """The provisioning provider rejected or failed a request."""


class ResourceNotFound(MeteringError):
    """The referenced pool resource does not exist."""

    def __init__(self, resource_id: object):
        self.resource_id = resource_id
        super().__init__(f"Pool resource {resource_id} not found")


class NoActiveResource(MeteringError):
    """The user has no assigned pool resource."""

    def __init__(self, user_id: object):
        self.user_id = user_id
        super().__init__(f"No active pool resource found for user {user_id}")


class PoolExhausted(MeteringError):
    """No available pool resource exists for the requested country."""

    def __init__(self, country: str):
        self.country = country
        super().__init__(f"No available pool resource for country {country}")


class ChargeFailed(MeteringError):
    """The payment collaborator did not complete an automatic charge."""


class TierNotEligible(MeteringError):
    """The user's subscription tier does not include the requested feature."""

    def __init__(self, user_id: object, feature: str):
        self.user_id = user_id
        self.feature = feature
        super().__init__(f"{feature} is only available for tier 3 (self-hosted) users")
