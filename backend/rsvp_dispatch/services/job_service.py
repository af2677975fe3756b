"""Bulk job service - creation, status transitions and queries"""
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any, List, Sequence
import logging

from rsvp_dispatch.core.metrics import jobs_created_counter, jobs_finished_counter
from rsvp_dispatch.models.bulk_job import BulkMessageJob, JobStatus, Channel, MessageFormat, MessageKind
from rsvp_dispatch.models.event import Event
from rsvp_dispatch.services import quota_service
from rsvp_dispatch.services.composer import build_template_catalog, default_template_id
from rsvp_dispatch.services.errors import EventNotFoundError, InvalidJobRequestError, JobNotFoundError
from rsvp_dispatch.services.recipients import resolve_recipients
from rsvp_dispatch.utils.time import utcnow, isoformat

logger = logging.getLogger(__name__)
dispatch_logger = logging.getLogger("dispatch")

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED},
}


def can_transition(current: str, new: str) -> bool:
    """Whether the job state machine allows moving from current to new"""
    return new in ALLOWED_TRANSITIONS.get(current, set())


def transition_job(
    db: Session,
    job_id: str,
    from_statuses: Sequence[str],
    new_status: str,
    values: Optional[Dict[str, Any]] = None,
    commit: bool = True
) -> bool:
    """
    Conditionally move a job to new_status.

    The UPDATE only matches while the job is still in one of from_statuses, so a
    concurrent cancel is never overwritten.

    Returns:
        True if the row was updated
    """
    allowed = [status for status in from_statuses if can_transition(status, new_status)]
    if not allowed:
        raise ValueError(f"Illegal job transition {list(from_statuses)} -> {new_status}")

    update = {BulkMessageJob.status: new_status, BulkMessageJob.updated_at: utcnow()}
    for key, value in (values or {}).items():
        update[getattr(BulkMessageJob, key)] = value

    updated = db.query(BulkMessageJob).filter(
        BulkMessageJob.id == job_id,
        BulkMessageJob.status.in_(allowed)
    ).update(update, synchronize_session=False)
    if commit:
        db.commit()

    if updated and new_status in JobStatus.TERMINAL:
        jobs_finished_counter.labels(status=new_status).inc()
    return bool(updated)


def resolve_channel(db: Session, account_id: int, requested: str, message_format: str) -> str:
    """
    Pick the concrete channel for a new job. Resolved once; never changes mid-job.

    Interactive buttons only exist on chat. 'auto' prefers chat while the account
    still has chat quota and falls back to text.
    """
    if message_format == MessageFormat.BUTTONS:
        if requested == Channel.TEXT:
            raise InvalidJobRequestError("Interactive buttons are only available on the chat channel")
        return Channel.CHAT
    if requested in Channel.CONCRETE:
        return requested
    if quota_service.remaining(account_id, Channel.CHAT, db) != 0:
        return Channel.CHAT
    return Channel.TEXT


def create_bulk_job(
    db: Session,
    account_id: int,
    event_id: int,
    message_kind: str,
    channel: str = Channel.AUTO,
    message_format: str = MessageFormat.PLAIN,
    template_id: Optional[str] = None,
    recipient_filter: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    recipient_ids: Optional[List[int]] = None,
    automation_flow_id: Optional[int] = None
) -> BulkMessageJob:
    """
    Create a PENDING job over an immutable recipient snapshot.

    Args:
        db: Database session
        account_id: Owning account
        event_id: Event the guests belong to
        message_kind: INVITE, REMINDER, EVENT_DAY or THANK_YOU
        channel: 'chat', 'text' or 'auto'
        message_format: 'plain', 'buttons' or 'image'
        template_id: Custom template id; the built-in default for the kind when omitted
        recipient_filter: Passed to resolve_recipients
        overrides: Template variable overrides
        recipient_ids: Explicit snapshot, bypasses recipient_filter (automations)
        automation_flow_id: Lineage when created by an automation flow

    Raises:
        EventNotFoundError: Event missing or owned by another account
        InvalidJobRequestError: Unknown kind/channel/format or template
    """
    if message_kind not in MessageKind.ALL:
        raise InvalidJobRequestError(f"Unknown message kind '{message_kind}'")
    if channel not in Channel.REQUESTABLE:
        raise InvalidJobRequestError(f"Unknown channel '{channel}'")
    if message_format not in MessageFormat.ALL:
        raise InvalidJobRequestError(f"Unknown message format '{message_format}'")

    event = db.query(Event).filter(Event.id == event_id, Event.account_id == account_id).first()
    if not event:
        raise EventNotFoundError(event_id)

    if template_id:
        catalog = build_template_catalog(db, account_id)
        if template_id not in catalog:
            raise InvalidJobRequestError(f"TEMPLATE_NOT_FOUND: template '{template_id}' does not exist")
    else:
        template_id = default_template_id(message_kind, event.locale)

    resolved_channel = resolve_channel(db, account_id, channel, message_format)

    if recipient_ids is None:
        recipient_ids = resolve_recipients(db, event_id, message_kind, recipient_filter)
    snapshot = list(recipient_ids)

    job = BulkMessageJob(
        account_id=account_id,
        event_id=event_id,
        message_kind=message_kind,
        requested_channel=channel,
        channel=resolved_channel,
        message_format=message_format,
        template_id=template_id,
        overrides=overrides or {},
        total_recipients=len(snapshot),
        recipient_ids=snapshot,
        recipient_cursor=0,
        status=JobStatus.PENDING,
        automation_flow_id=automation_flow_id,
    )
    db.add(job)
    db.commit()
    db.refresh(job)

    jobs_created_counter.labels(
        channel=resolved_channel,
        source="automation" if automation_flow_id else "api"
    ).inc()
    dispatch_logger.info(
        f"Created job {job.id} for event {event_id}: {message_kind} via {resolved_channel} "
        f"to {len(snapshot)} recipients"
    )
    return job


def get_job(db: Session, job_id: str, account_id: Optional[int] = None) -> BulkMessageJob:
    """Load a job; jobs of other accounts are reported as missing"""
    query = db.query(BulkMessageJob).filter(BulkMessageJob.id == job_id)
    if account_id is not None:
        query = query.filter(BulkMessageJob.account_id == account_id)
    job = query.first()
    if not job:
        raise JobNotFoundError(job_id)
    return job


def job_to_status(job: BulkMessageJob) -> Dict[str, Any]:
    """Public view of a job"""
    return {
        "job_id": job.id,
        "event_id": job.event_id,
        "status": job.status,
        "message_kind": job.message_kind,
        "channel": job.channel,
        "message_format": job.message_format,
        "total_recipients": job.total_recipients,
        "processed": job.processed_count,
        "success_count": job.success_count,
        "failed_count": job.failed_count,
        "skipped_count": job.skipped_count,
        "is_complete": job.status in JobStatus.TERMINAL,
        "automation_flow_id": job.automation_flow_id,
        "last_error": job.last_error,
        "created_at": isoformat(job.created_at),
        "started_at": isoformat(job.started_at),
        "completed_at": isoformat(job.completed_at),
    }


def get_job_status(db: Session, job_id: str, account_id: Optional[int] = None) -> Dict[str, Any]:
    return job_to_status(get_job(db, job_id, account_id))


def cancel_job(db: Session, job_id: str, account_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Cancel a job that has not finished yet.

    Cancelling a job that already reached a terminal status is not an error;
    the job is left unchanged and cancelled is False.
    """
    job = get_job(db, job_id, account_id)
    cancelled = transition_job(
        db, job.id, JobStatus.ACTIVE, JobStatus.CANCELLED,
        values={"completed_at": utcnow()}
    )
    db.refresh(job)
    if cancelled:
        dispatch_logger.info(f"Job {job.id} cancelled after {job.processed_count}/{job.total_recipients} recipients")
    return {"ok": True, "job_id": job.id, "status": job.status, "cancelled": cancelled}


def mark_job_failed(db: Session, job_id: str, error: str) -> bool:
    """Move an unfinished job to FAILED, recording why"""
    db.rollback()
    failed = transition_job(
        db, job_id, JobStatus.ACTIVE, JobStatus.FAILED,
        values={"last_error": error[:2000], "completed_at": utcnow()}
    )
    if failed:
        dispatch_logger.error(f"Job {job_id} failed: {error}")
    return failed


def list_jobs(db: Session, account_id: int, event_id: Optional[int] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent jobs of the account, optionally for one event"""
    query = db.query(BulkMessageJob).filter(BulkMessageJob.account_id == account_id)
    if event_id is not None:
        query = query.filter(BulkMessageJob.event_id == event_id)
    jobs = query.order_by(BulkMessageJob.created_at.desc()).limit(limit).all()
    return [job_to_status(job) for job in jobs]


def list_pending_jobs(db: Session, limit: int = 50) -> List[BulkMessageJob]:
    """Unfinished jobs, oldest first, for the dispatch tick"""
    return db.query(BulkMessageJob).filter(
        BulkMessageJob.status.in_(JobStatus.ACTIVE)
    ).order_by(BulkMessageJob.created_at.asc()).limit(limit).all()
