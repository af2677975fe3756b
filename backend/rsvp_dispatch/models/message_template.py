"""MessageTemplate model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text, Boolean
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class MessageTemplate(Base):
    """Account-defined message body replacing a built-in default"""
    __tablename__ = "message_templates"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=True, index=True)
    message_kind = Column(String(20), nullable=False)
    locale = Column(String(5), default="he", nullable=False)
    body = Column(Text, nullable=False)
    buttons = Column(JSON, default=list)  # Quick-reply labels for the buttons shape
    content_sid = Column(String(64), nullable=True)  # Approved provider template (WhatsApp)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<MessageTemplate(id={self.id}, kind='{self.message_kind}', locale='{self.locale}')>"
