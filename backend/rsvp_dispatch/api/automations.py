"""Automation hook routes, called by the RSVP service"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rsvp_dispatch.core.security import require_cron_secret
from rsvp_dispatch.db.session import get_db
from rsvp_dispatch.schemas.automations import RsvpStatusChanged
from rsvp_dispatch.services.automation_service import handle_rsvp_status_changed

# Internal callers share the scheduler's bearer secret
router = APIRouter(prefix="/api/automations", tags=["automations"], dependencies=[Depends(require_cron_secret)])


@router.post("/rsvp-changed")
def rsvp_changed(payload: RsvpStatusChanged, db: Session = Depends(get_db)):
    """Fire RSVP_CONFIRMED / RSVP_DECLINED flows and drop reminders nobody needs"""
    return handle_rsvp_status_changed(db, payload.guest_id, payload.previous_status, payload.status)
