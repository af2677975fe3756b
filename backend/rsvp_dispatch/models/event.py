"""Event model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class Event(Base):
    """An event guests are invited to"""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    location = Column(String(255), default="", nullable=False)
    venue = Column(String(255), nullable=True)
    locale = Column(String(5), default="he", nullable=False)  # 'he' or 'en'
    image_url = Column(String(1024), nullable=True)  # Invitation image for the image message shape
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    account = relationship("Account", back_populates="events")
    guests = relationship("Guest", back_populates="event", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Event(id={self.id}, title='{self.title}')>"
