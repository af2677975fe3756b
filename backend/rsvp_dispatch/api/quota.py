"""Quota API routes"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from rsvp_dispatch.core.security import require_account
from rsvp_dispatch.db.session import get_db
from rsvp_dispatch.services.quota_service import get_usage_summary

router = APIRouter(prefix="/api/quota", tags=["quota"])


@router.get("")
def get_quota(account_id: int = Depends(require_account), db: Session = Depends(get_db)):
    """Get this month's message usage per channel"""
    summary = get_usage_summary(account_id, db)
    if not summary:
        raise HTTPException(404, "Account not found")
    return summary
