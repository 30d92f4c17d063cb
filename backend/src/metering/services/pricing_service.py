"""Pricing rules for metered usage events."""
import enum
from dataclasses import dataclass
from typing import NamedTuple

from metering.exceptions import InvalidEventType


class EventType(str, enum.Enum):
    """Billable usage event kinds."""

    MESSAGE = "message"
    VOICE = "voice"
    NOTIFY_MESSAGE = "noti_msg"
    NOTIFY_CALL = "noti_call"
    DIGEST = "digest"

    @classmethod
    def parse(cls, value: "str | EventType") -> "EventType":
        """
        Convert a raw event kind into an EventType.

        Raises:
            InvalidEventType: If the value is not a known event kind
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidEventType(value) from None


class Region(enum.Enum):
    """Pricing regions keyed by phone prefix."""

    US_CA = "+1"
    FINLAND = "+358"
    NETHERLANDS = "+31"
    UNITED_KINGDOM = "+44"
    AUSTRALIA = "+61"
    # The local carrier absorbs messaging cost; usage is never metered
    INCLUDED = "included"

    @property
    def is_metered(self) -> bool:
        return self is not Region.INCLUDED


@dataclass(frozen=True)
class RegionRates:
    """Monetary rates for one region."""

    message: float
    voice_second: float
    notify_message: float
    notify_call: float


RATE_TABLE: dict[Region, RegionRates] = {
    Region.US_CA: RegionRates(message=0.075, voice_second=0.0033, notify_message=0.075, notify_call=0.15),
    Region.FINLAND: RegionRates(message=0.30, voice_second=0.005, notify_message=0.15, notify_call=0.70),
    Region.NETHERLANDS: RegionRates(message=0.30, voice_second=0.005, notify_message=0.15, notify_call=0.45),
    Region.UNITED_KINGDOM: RegionRates(message=0.30, voice_second=0.005, notify_message=0.15, notify_call=0.20),
    Region.AUSTRALIA: RegionRates(message=0.30, voice_second=0.005, notify_message=0.15, notify_call=0.20),
}

# Quota units per event. Voice is never paid from the quota.
QUOTA_COST: dict[EventType, float] = {
    EventType.MESSAGE: 1.0,
    EventType.VOICE: 0.0,
    EventType.NOTIFY_MESSAGE: 0.5,
    EventType.NOTIFY_CALL: 0.5,
}


class UsageCost(NamedTuple):
    """Cost of one event in both balances."""

    monetary: float
    quota: float


FREE = UsageCost(monetary=0.0, quota=0.0)


def region_for_phone(phone_number: str) -> Region:
    """
    Resolve the pricing region from an E.164 phone number.

    Args:
        phone_number: Phone number with leading ``+`` and country code

    Returns:
        Matching metered region, or Region.INCLUDED for any other prefix
    """
    for region in RATE_TABLE:
        if phone_number.startswith(region.value):
            return region
    return Region.INCLUDED


def calculate_cost(
    region: Region,
    event_type: "str | EventType",
    quantity: int | None = None,
    message_price_override: float | None = None,
) -> UsageCost:
    """
    Price a usage event.

    Args:
        region: Pricing region of the user's phone number
        event_type: Event kind (message, voice, noti_msg, noti_call, digest)
        quantity: Seconds for voice, message count for digest; None counts as 0
        message_price_override: Tier 3 per-message price; replaces the message,
            notification-message and digest rates but never voice or call rates

    Returns:
        UsageCost with the monetary and quota amounts

    Raises:
        InvalidEventType: If event_type is not a known kind
    """
    event = EventType.parse(event_type)
    if not region.is_metered:
        return FREE

    rates = RATE_TABLE[region]
    units = quantity or 0
    message_rate = rates.message if message_price_override is None else message_price_override
    notify_message_rate = rates.notify_message if message_price_override is None else message_price_override

    if event is EventType.MESSAGE:
        monetary = message_rate
    elif event is EventType.VOICE:
        monetary = units * rates.voice_second
    elif event is EventType.NOTIFY_MESSAGE:
        monetary = notify_message_rate
    elif event is EventType.NOTIFY_CALL:
        monetary = rates.notify_call
    else:
        monetary = units * message_rate

    quota = 1.0 * units if event is EventType.DIGEST else QUOTA_COST[event]
    return UsageCost(monetary=monetary, quota=quota)
