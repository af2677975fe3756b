"""Quota service - per-account monthly message allowance per channel"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from rsvp_dispatch.models.account import Account, PlanTier
from rsvp_dispatch.models.bulk_job import Channel
from rsvp_dispatch.models.quota_ledger import QuotaLedger
from rsvp_dispatch.utils.time import utcnow, month_start, isoformat

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Monthly limits per plan tier; -1 indicates unlimited
PLAN_LIMITS = {
    PlanTier.FREE: {Channel.CHAT: 0, Channel.TEXT: 0},
    PlanTier.BASIC: {Channel.CHAT: 650, Channel.TEXT: 0},
    PlanTier.ADVANCED: {Channel.CHAT: 750, Channel.TEXT: 30},
    PlanTier.PREMIUM: {Channel.CHAT: 1000, Channel.TEXT: 50},
    PlanTier.BUSINESS: {Channel.CHAT: UNLIMITED, Channel.TEXT: UNLIMITED},
}

_SENT_COLUMNS = {
    Channel.CHAT: QuotaLedger.chat_sent,
    Channel.TEXT: QuotaLedger.text_sent,
}

_BONUS_COLUMNS = {
    Channel.CHAT: QuotaLedger.chat_bonus,
    Channel.TEXT: QuotaLedger.text_bonus,
}


def _check_channel(channel: str) -> None:
    if channel not in Channel.CONCRETE:
        raise ValueError(f"Unknown channel '{channel}'")


def get_plan_limit(plan_tier: str, channel: str) -> int:
    """Plan allowance for a channel; unknown tiers get nothing"""
    _check_channel(channel)
    return PLAN_LIMITS.get(plan_tier, PLAN_LIMITS[PlanTier.FREE])[channel]


def get_or_create_ledger(account_id: int, db: Session, now: Optional[datetime] = None) -> QuotaLedger:
    """Get or create the ledger row for the account's current month"""
    period_start = month_start(now or utcnow())
    ledger = db.query(QuotaLedger).filter(
        QuotaLedger.account_id == account_id,
        QuotaLedger.period_start == period_start
    ).first()

    if not ledger:
        ledger = QuotaLedger(
            account_id=account_id,
            period_start=period_start,
            chat_sent=0,
            text_sent=0,
            chat_bonus=0,
            text_bonus=0,
        )
        db.add(ledger)
        try:
            db.commit()
        except IntegrityError:
            # Another invocation created this month's row first
            db.rollback()
            ledger = db.query(QuotaLedger).filter(
                QuotaLedger.account_id == account_id,
                QuotaLedger.period_start == period_start
            ).one()
        else:
            db.refresh(ledger)

    return ledger


def remaining(account_id: int, channel: str, db: Session, now: Optional[datetime] = None) -> int:
    """
    Number of sends still allowed for the account on a channel this period.

    Returns:
        -1 for unlimited plans, otherwise max(0, limit + bonus - sent).
        A missing account has no allowance.
    """
    _check_channel(channel)
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        return 0

    limit = get_plan_limit(account.plan_tier, channel)
    if limit == UNLIMITED:
        return UNLIMITED

    ledger = get_or_create_ledger(account_id, db, now)
    sent = getattr(ledger, f"{channel}_sent")
    bonus = getattr(ledger, f"{channel}_bonus")
    return max(0, limit + bonus - sent)


def commit_usage(
    account_id: int,
    channel: str,
    count: int,
    db: Session,
    now: Optional[datetime] = None,
    commit: bool = True
) -> None:
    """
    Record successful sends against the account's quota.

    Uses a single UPDATE ... SET sent = sent + :count so concurrent
    dispatchers never lose increments. Unlimited accounts are still counted.

    Args:
        account_id: Account that sent the messages
        channel: 'chat' or 'text'
        count: Number of successful sends; values <= 0 are ignored
        db: Database session
        commit: False leaves the increment in the caller's transaction
    """
    _check_channel(channel)
    if count <= 0:
        return

    ledger = get_or_create_ledger(account_id, db, now)
    column = _SENT_COLUMNS[channel]
    db.query(QuotaLedger).filter(QuotaLedger.id == ledger.id).update(
        {column: column + count, QuotaLedger.updated_at: utcnow()},
        synchronize_session=False
    )
    if commit:
        db.commit()
    logger.info(f"Recorded {count} {channel} sends for account {account_id}")


def add_bonus(account_id: int, channel: str, count: int, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Grant extra messages for the current period (admin operation)"""
    _check_channel(channel)
    if count <= 0:
        raise ValueError("Bonus must be a positive number of messages")

    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise ValueError(f"Account {account_id} not found")

    ledger = get_or_create_ledger(account_id, db, now)
    column = _BONUS_COLUMNS[channel]
    db.query(QuotaLedger).filter(QuotaLedger.id == ledger.id).update(
        {column: column + count, QuotaLedger.updated_at: utcnow()},
        synchronize_session=False
    )
    db.commit()
    logger.info(f"Granted {count} bonus {channel} messages to account {account_id}")
    return {"ok": True, "remaining": remaining(account_id, channel, db, now)}


def get_usage_summary(account_id: int, db: Session, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Usage overview for the account's current period"""
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        return None

    ledger = get_or_create_ledger(account_id, db, now)
    db.refresh(ledger)
    channels = {}
    for channel in Channel.CONCRETE:
        limit = get_plan_limit(account.plan_tier, channel)
        channels[channel] = {
            "limit": limit,
            "bonus": getattr(ledger, f"{channel}_bonus"),
            "sent": getattr(ledger, f"{channel}_sent"),
            "remaining": remaining(account_id, channel, db, now),
            "unlimited": limit == UNLIMITED,
        }

    return {
        "account_id": account_id,
        "plan_tier": account.plan_tier,
        "period_start": isoformat(ledger.period_start),
        "channels": channels,
    }
