"""Account model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from rsvp_dispatch.models.base import Base


class PlanTier:
    FREE = "FREE"
    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    PREMIUM = "PREMIUM"
    BUSINESS = "BUSINESS"

    ALL = (FREE, BASIC, ADVANCED, PREMIUM, BUSINESS)


class Account(Base):
    """Tenant that owns events and pays for messaging quota"""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    plan_tier = Column(String(20), default=PlanTier.FREE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    events = relationship("Event", back_populates="account", cascade="all, delete-orphan")
    quota_ledgers = relationship("QuotaLedger", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Account(id={self.id}, plan_tier='{self.plan_tier}')>"
