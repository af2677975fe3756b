"""BulkMessageJob model"""
import uuid
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class JobStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    ACTIVE = (PENDING, PROCESSING)
    TERMINAL = (COMPLETED, CANCELLED, FAILED)


class Channel:
    CHAT = "chat"  # WhatsApp
    TEXT = "text"  # SMS
    AUTO = "auto"  # resolved to chat or text when the job is created

    CONCRETE = (CHAT, TEXT)
    REQUESTABLE = (CHAT, TEXT, AUTO)


class MessageKind:
    INVITE = "INVITE"
    REMINDER = "REMINDER"
    EVENT_DAY = "EVENT_DAY"
    THANK_YOU = "THANK_YOU"

    ALL = (INVITE, REMINDER, EVENT_DAY, THANK_YOU)


class MessageFormat:
    PLAIN = "plain"
    BUTTONS = "buttons"  # interactive, chat only
    IMAGE = "image"

    ALL = (PLAIN, BUTTONS, IMAGE)


class BulkMessageJob(Base):
    """One bulk send over an immutable recipient snapshot.

    account_id and event_id are plain columns: a job outlives the event it
    was created for and is marked FAILED when the event disappears.
    """
    __tablename__ = "bulk_message_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(Integer, nullable=False, index=True)
    event_id = Column(Integer, nullable=False, index=True)

    message_kind = Column(String(20), nullable=False)
    requested_channel = Column(String(10), nullable=False)  # chat / text / auto as requested
    channel = Column(String(10), nullable=False)  # resolved once at creation
    message_format = Column(String(10), default=MessageFormat.PLAIN, nullable=False)
    template_id = Column(String(100), nullable=True)  # None means the built-in default for the kind
    overrides = Column(JSON, default=dict)

    # Counters
    total_recipients = Column(Integer, default=0, nullable=False)
    processed_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    skipped_count = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=JobStatus.PENDING, nullable=False, index=True)

    # Ordered guest ids captured at creation; never rewritten
    recipient_ids = Column(JSON, nullable=False, default=list)
    recipient_cursor = Column(Integer, default=0, nullable=False)

    automation_flow_id = Column(Integer, nullable=True, index=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_bulk_message_jobs_status_created', 'status', 'created_at'),
        Index('ix_bulk_message_jobs_event_created', 'event_id', 'created_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def __repr__(self):
        return (
            f"<BulkMessageJob(id={self.id}, status='{self.status}', "
            f"processed={self.processed_count}/{self.total_recipients})>"
        )
