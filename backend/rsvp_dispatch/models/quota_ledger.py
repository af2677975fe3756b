"""QuotaLedger model"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class QuotaLedger(Base):
    """Per-account, per-month message usage counters"""
    __tablename__ = "quota_ledgers"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    period_start = Column(DateTime(timezone=True), nullable=False)  # First instant of the month, UTC

    # Usage, only ever incremented with a single UPDATE
    chat_sent = Column(Integer, default=0, nullable=False)
    text_sent = Column(Integer, default=0, nullable=False)

    # Granted on top of the plan limit
    chat_bonus = Column(Integer, default=0, nullable=False)
    text_bonus = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    account = relationship("Account", back_populates="quota_ledgers")

    __table_args__ = (
        UniqueConstraint('account_id', 'period_start', name='uq_quota_ledgers_account_period'),
    )

    def __repr__(self):
        return f"<QuotaLedger(account_id={self.account_id}, chat_sent={self.chat_sent}, text_sent={self.text_sent})>"
