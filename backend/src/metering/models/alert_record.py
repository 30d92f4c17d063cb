"""Append-only log of admin alerts, used for cooldown lookups."""
from sqlalchemy import Boolean, Column, DateTime, Index, String

from metering.models.base import Base
from metering.utils.clock import utcnow


class AlertRecord(Base):
    """
    One row per admin alert that was sent.

    Rows are never updated or deleted; the newest row per ``alert_type``
    decides whether an alert is still cooling down.
    """

    __tablename__ = "alert_records"
    __table_args__ = (Index("ix_alert_records_type_sent_at", "alert_type", "sent_at"),)

    alert_type = Column(String, nullable=False)  # The alert subject
    sent_at = Column(DateTime, nullable=False, default=utcnow)
    success = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<AlertRecord(alert_type={self.alert_type!r}, sent_at={self.sent_at})>"
