"""Cron tick endpoints, called by the external scheduler"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from rsvp_dispatch.core.security import require_cron_secret
from rsvp_dispatch.db.session import get_db
from rsvp_dispatch.services.automation_service import evaluate_automation_flows
from rsvp_dispatch.services.dispatcher import process_pending_jobs

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/dispatch")
async def dispatch_tick(db: Session = Depends(get_db)):
    """Advance the oldest unfinished jobs by one chunk each"""
    return await process_pending_jobs(db)


@router.post("/automations")
def automations_tick(db: Session = Depends(get_db)):
    """Evaluate active automation flows and create jobs for new matches"""
    return evaluate_automation_flows(db)
