"""Unit tests for the UTC clock helper."""
from datetime import datetime, timedelta, timezone

from metering.utils.clock import utcnow


def test_utcnow_is_naive_utc() -> None:
    now = utcnow()

    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)
