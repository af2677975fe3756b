"""AutomationFlow and AutomationFlowRecipient models"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base
from rsvp_dispatch.models.bulk_job import Channel, MessageFormat


class FlowTrigger:
    NO_RESPONSE = "NO_RESPONSE"
    BEFORE_EVENT = "BEFORE_EVENT"
    AFTER_EVENT = "AFTER_EVENT"
    EVENT_DAY_MORNING = "EVENT_DAY_MORNING"
    DAY_AFTER_MORNING = "DAY_AFTER_MORNING"
    # Fired by RSVP changes, never by the periodic evaluation
    RSVP_CONFIRMED = "RSVP_CONFIRMED"
    RSVP_DECLINED = "RSVP_DECLINED"

    TIME_BASED = (NO_RESPONSE, BEFORE_EVENT, AFTER_EVENT, EVENT_DAY_MORNING, DAY_AFTER_MORNING)
    EVENT_BASED = (RSVP_CONFIRMED, RSVP_DECLINED)
    ALL = TIME_BASED + EVENT_BASED


class FlowStatus:
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class AutomationFlow(Base):
    """Rule that selects guests on a schedule or on an RSVP change and sends them a message"""
    __tablename__ = "automation_flows"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    trigger = Column(String(30), nullable=False)
    delay_hours = Column(Integer, nullable=True)  # None uses the trigger's default
    message_kind = Column(String(20), nullable=False)
    channel = Column(String(10), default=Channel.AUTO, nullable=False)
    message_format = Column(String(10), default=MessageFormat.PLAIN, nullable=False)
    template_id = Column(String(100), nullable=True)
    status = Column(String(10), default=FlowStatus.DRAFT, nullable=False, index=True)
    last_evaluated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    recipients = relationship("AutomationFlowRecipient", back_populates="flow", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<AutomationFlow(id={self.id}, trigger='{self.trigger}', status='{self.status}')>"


class AutomationFlowRecipient(Base):
    """Marks a guest as already selected by a flow"""
    __tablename__ = "automation_flow_recipients"

    id = Column(Integer, primary_key=True, index=True)
    flow_id = Column(Integer, ForeignKey("automation_flows.id", ondelete="CASCADE"), nullable=False, index=True)
    guest_id = Column(Integer, nullable=False)
    job_id = Column(String(36), nullable=True)
    notified_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    flow = relationship("AutomationFlow", back_populates="recipients")

    __table_args__ = (
        UniqueConstraint('flow_id', 'guest_id', name='uq_automation_flow_recipient'),
    )
