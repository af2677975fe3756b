"""DeliveryLogEntry model"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class DeliveryStatus:
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    ALL = (SENT, FAILED, SKIPPED)


class DeliveryLogEntry(Base):
    """Append-only record of one delivery attempt for one recipient of one job"""
    __tablename__ = "delivery_log_entries"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(36), nullable=False, index=True)
    recipient_id = Column(Integer, nullable=False)
    channel = Column(String(10), nullable=False)
    message_kind = Column(String(20), nullable=False)
    status = Column(String(10), nullable=False)
    error_kind = Column(String(30), nullable=True)  # ErrorKind value, or a skip reason
    provider_message_id = Column(String(64), nullable=True)
    provider_response = Column(JSON, nullable=True)
    attempted_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        # A recipient is attempted at most once per job
        UniqueConstraint('job_id', 'recipient_id', name='uq_delivery_log_job_recipient'),
        Index('ix_delivery_log_recipient_attempted', 'recipient_id', 'attempted_at'),
    )

    def __repr__(self):
        return f"<DeliveryLogEntry(job_id={self.job_id}, recipient_id={self.recipient_id}, status='{self.status}')>"
