"""Bulk job API routes"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from rsvp_dispatch.core.security import require_account
from rsvp_dispatch.db.session import get_db
from rsvp_dispatch.schemas.bulk_jobs import (
    BulkJobCreate, BulkJobCreated, BulkJobStatus, BulkJobCancelled, ChunkProgress, DeliveryEntry
)
from rsvp_dispatch.services import job_service
from rsvp_dispatch.services.delivery_log import get_guest_history, list_job_deliveries
from rsvp_dispatch.services.dispatcher import process_job_chunk
from rsvp_dispatch.services.errors import BulkJobError, JobNotFoundError
from rsvp_dispatch.models.guest import Guest
from rsvp_dispatch.models.event import Event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bulk-jobs", tags=["bulk-jobs"])
guests_router = APIRouter(prefix="/api/guests", tags=["bulk-jobs"])


def _raise_http(e: BulkJobError):
    raise HTTPException(e.status_code, str(e))


@router.post("", response_model=BulkJobCreated)
def create_job(
    request: BulkJobCreate,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Create a bulk job over a snapshot of the matching guests"""
    try:
        job = job_service.create_bulk_job(
            db,
            account_id=account_id,
            event_id=request.event_id,
            message_kind=request.message_kind,
            channel=request.channel,
            message_format=request.message_format,
            template_id=request.template_id,
            recipient_filter=request.recipient_filter.to_service(),
            overrides=request.overrides,
        )
    except BulkJobError as e:
        _raise_http(e)
    return BulkJobCreated(job_id=job.id, total_recipients=job.total_recipients, channel=job.channel, status=job.status)


@router.get("", response_model=List[BulkJobStatus])
def list_jobs(
    event_id: Optional[int] = None,
    limit: int = 50,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Recent jobs of the account"""
    return job_service.list_jobs(db, account_id, event_id=event_id, limit=min(limit, 200))


@router.post("/{job_id}/continue", response_model=ChunkProgress)
async def continue_job(
    job_id: str,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Process the next chunk; finished or unknown jobs return a no-op result"""
    try:
        job_service.get_job(db, job_id, account_id)
    except JobNotFoundError:
        return ChunkProgress(
            job_id=job_id, status=None, total_recipients=0, processed=0, success_count=0,
            failed_count=0, skipped_count=0, processed_this_call=0, is_complete=True,
            no_op=True, error="Job not found"
        )

    try:
        result = await process_job_chunk(job_id, db)
    except BulkJobError as e:
        _raise_http(e)
    return ChunkProgress(**result.to_dict())


@router.get("/{job_id}/status", response_model=BulkJobStatus)
def get_status(
    job_id: str,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Current counters and status of a job"""
    try:
        return job_service.get_job_status(db, job_id, account_id)
    except BulkJobError as e:
        _raise_http(e)


@router.post("/{job_id}/cancel", response_model=BulkJobCancelled)
def cancel(
    job_id: str,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Cancel a job; already finished jobs are returned unchanged"""
    try:
        return job_service.cancel_job(db, job_id, account_id)
    except BulkJobError as e:
        _raise_http(e)


@router.get("/{job_id}/deliveries", response_model=List[DeliveryEntry])
def get_deliveries(
    job_id: str,
    status: Optional[str] = None,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Delivery log entries of a job"""
    try:
        job_service.get_job(db, job_id, account_id)
    except BulkJobError as e:
        _raise_http(e)
    return list_job_deliveries(db, job_id, status=status)


@guests_router.get("/{guest_id}/deliveries", response_model=List[DeliveryEntry])
def get_guest_deliveries(
    guest_id: int,
    account_id: int = Depends(require_account),
    db: Session = Depends(get_db)
):
    """Every message attempt made for one guest"""
    guest = db.query(Guest).join(Event, Event.id == Guest.event_id).filter(
        Guest.id == guest_id,
        Event.account_id == account_id
    ).first()
    if not guest:
        raise HTTPException(404, "Guest not found")
    return get_guest_history(db, guest_id)
