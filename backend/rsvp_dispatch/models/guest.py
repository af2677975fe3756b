"""Guest model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class RsvpStatus:
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"

    ALL = (PENDING, ACCEPTED, DECLINED)


class Guest(Base):
    """Invited guest; the recipient of bulk messages"""
    __tablename__ = "guests"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone_number = Column(String(32), nullable=True)  # Missing numbers are skipped by the dispatcher
    slug = Column(String(64), unique=True, nullable=False)  # Public RSVP page slug
    rsvp_status = Column(String(20), default=RsvpStatus.PENDING, nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    table_name = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    event = relationship("Event", back_populates="guests")

    __table_args__ = (
        Index('ix_guests_event_rsvp', 'event_id', 'rsvp_status'),
    )

    def __repr__(self):
        return f"<Guest(id={self.id}, event_id={self.event_id}, rsvp_status='{self.rsvp_status}')>"
