"""Automation service - evaluates active flows and turns matches into bulk jobs"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import datetime, tzinfo
from typing import Optional, Dict, Any, List
import logging
import uuid

from rsvp_dispatch.core.metrics import automation_runs_counter, automation_guests_matched_counter
from rsvp_dispatch.db.redis import acquire_lock, release_lock
from rsvp_dispatch.models.automation import AutomationFlow, AutomationFlowRecipient, FlowStatus, FlowTrigger
from rsvp_dispatch.models.bulk_job import BulkMessageJob, JobStatus
from rsvp_dispatch.models.event import Event
from rsvp_dispatch.models.guest import Guest, RsvpStatus
from rsvp_dispatch.services.delivery_log import last_sent_by_guest
from rsvp_dispatch.services.errors import BulkJobError, InvalidJobRequestError
from rsvp_dispatch.services.job_service import cancel_job, create_bulk_job
from rsvp_dispatch.services.triggers import TriggerContext, check_trigger_condition
from rsvp_dispatch.utils.time import utcnow, as_utc, display_timezone

logger = logging.getLogger(__name__)
automation_logger = logging.getLogger("automation")

EVALUATION_LOCK_KEY = "automation:evaluate"
EVALUATION_LOCK_TIMEOUT = 300  # seconds


def notified_guest_ids(db: Session, flow_id: int) -> set:
    """Guests this flow has already selected"""
    rows = db.query(AutomationFlowRecipient.guest_id).filter(AutomationFlowRecipient.flow_id == flow_id).all()
    return {row[0] for row in rows}


def find_matching_guests(db: Session, flow: AutomationFlow, event: Event, now: datetime, tz: tzinfo) -> List[int]:
    """Guests of the flow's event whose trigger condition holds and who were not selected before"""
    already = notified_guest_ids(db, flow.id)
    candidates = [
        guest for guest in db.query(Guest).filter(Guest.event_id == flow.event_id).order_by(Guest.id).all()
        if guest.id not in already
    ]
    if not candidates:
        return []

    last_sent = {}
    if flow.trigger == FlowTrigger.NO_RESPONSE:
        last_sent = last_sent_by_guest(db, [guest.id for guest in candidates])

    matched = []
    for guest in candidates:
        ctx = TriggerContext(
            rsvp_status=guest.rsvp_status,
            event_starts_at=event.starts_at,
            last_sent_at=last_sent.get(guest.id),
            delay_hours=flow.delay_hours,
        )
        if check_trigger_condition(flow.trigger, ctx, now, tz).should_trigger:
            matched.append(guest.id)
    return matched


def evaluate_flow(db: Session, flow: AutomationFlow, now: datetime, tz: tzinfo) -> Optional[BulkMessageJob]:
    """
    Evaluate one flow and create a job for the newly matched guests.

    Returns:
        The created job, or None when nobody matched
    """
    event = db.query(Event).filter(Event.id == flow.event_id).first()
    if not event or not event.is_active:
        automation_logger.info(f"Flow {flow.id}: event {flow.event_id} missing or inactive, skipping")
        return None

    matched = find_matching_guests(db, flow, event, now, tz)
    flow.last_evaluated_at = now
    if not matched:
        db.commit()
        return None

    return claim_and_create_job(db, flow, matched, now)


def claim_and_create_job(db: Session, flow: AutomationFlow, matched: List[int], now: datetime) -> Optional[BulkMessageJob]:
    """
    Record the guests as selected by the flow, then create their job.

    Matched guests are recorded before the job is created, so a guest is
    selected at most once per flow even if job creation fails afterwards.

    Returns:
        The created job, or None when another caller claimed the guests first
    """
    records = [AutomationFlowRecipient(flow_id=flow.id, guest_id=guest_id, notified_at=now) for guest_id in matched]
    db.add_all(records)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent evaluation selected some of these guests first
        db.rollback()
        automation_logger.warning(f"Flow {flow.id}: guests already claimed by another evaluation, skipping")
        return None

    job = create_bulk_job(
        db,
        account_id=flow.account_id,
        event_id=flow.event_id,
        message_kind=flow.message_kind,
        channel=flow.channel,
        message_format=flow.message_format,
        template_id=flow.template_id,
        recipient_ids=matched,
        automation_flow_id=flow.id,
    )
    db.query(AutomationFlowRecipient).filter(
        AutomationFlowRecipient.flow_id == flow.id,
        AutomationFlowRecipient.guest_id.in_(matched)
    ).update({AutomationFlowRecipient.job_id: job.id}, synchronize_session=False)
    db.commit()

    automation_guests_matched_counter.labels(trigger=flow.trigger).inc(len(matched))
    automation_logger.info(f"Flow {flow.id} ({flow.trigger}) matched {len(matched)} guests, job {job.id}")
    return job


def evaluate_automation_flows(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Evaluate every ACTIVE time-based flow once (cron tick).

    Only one evaluation runs at a time across processes (Redis lock).
    Flows that fail are reported and do not stop the others.
    """
    lock_token = uuid.uuid4().hex
    if not acquire_lock(EVALUATION_LOCK_KEY, EVALUATION_LOCK_TIMEOUT, value=lock_token):
        automation_logger.info("Automation evaluation already running, skipping this tick")
        return {"ok": True, "skipped": True, "flows_evaluated": 0, "jobs_created": [], "errors": []}

    now = as_utc(now) if now else utcnow()
    tz = display_timezone()
    jobs_created = []
    errors = []
    flows_evaluated = 0

    try:
        flows = db.query(AutomationFlow).filter(
            AutomationFlow.status == FlowStatus.ACTIVE,
            AutomationFlow.trigger.in_(FlowTrigger.TIME_BASED)
        ).order_by(AutomationFlow.id).all()
        for flow in flows:
            flow_id = flow.id
            try:
                job = evaluate_flow(db, flow, now, tz)
            except BulkJobError as e:
                db.rollback()
                automation_logger.error(f"Flow {flow_id} could not create a job: {e}")
                errors.append({"flow_id": flow_id, "error": str(e)})
                continue
            flows_evaluated += 1
            if job is not None:
                jobs_created.append({"flow_id": flow_id, "job_id": job.id, "recipients": job.total_recipients})
    except Exception:
        automation_runs_counter.labels(status="error").inc()
        raise
    finally:
        release_lock(EVALUATION_LOCK_KEY, value=lock_token)

    automation_runs_counter.labels(status="success").inc()
    automation_logger.info(f"Evaluated {flows_evaluated} flows, created {len(jobs_created)} jobs")
    return {
        "ok": True,
        "skipped": False,
        "flows_evaluated": flows_evaluated,
        "jobs_created": jobs_created,
        "errors": errors,
    }


def rsvp_trigger_for(previous_status: Optional[str], new_status: str) -> Optional[str]:
    """The event-based trigger an RSVP change fires, if any"""
    if new_status == previous_status:
        return None
    if new_status == RsvpStatus.ACCEPTED:
        return FlowTrigger.RSVP_CONFIRMED
    if new_status == RsvpStatus.DECLINED:
        return FlowTrigger.RSVP_DECLINED
    return None


def cancel_no_response_jobs(db: Session, event_id: int) -> List[str]:
    """
    Cancel NO_RESPONSE jobs of the event that have not started and whose
    guests have all responded since the job was created.

    Jobs that still hold a pending guest are left alone; their snapshot is
    never edited.
    """
    jobs = db.query(BulkMessageJob).join(
        AutomationFlow, BulkMessageJob.automation_flow_id == AutomationFlow.id
    ).filter(
        AutomationFlow.event_id == event_id,
        AutomationFlow.trigger == FlowTrigger.NO_RESPONSE,
        BulkMessageJob.status == JobStatus.PENDING
    ).all()

    cancelled = []
    for job in jobs:
        snapshot = list(job.recipient_ids or [])
        still_pending = db.query(Guest.id).filter(
            Guest.id.in_(snapshot),
            Guest.rsvp_status == RsvpStatus.PENDING
        ).count() if snapshot else 0
        if still_pending:
            continue
        if cancel_job(db, job.id)["cancelled"]:
            cancelled.append(job.id)
    if cancelled:
        automation_logger.info(f"Event {event_id}: cancelled no-response jobs {cancelled}, every guest responded")
    return cancelled


def handle_rsvp_status_changed(
    db: Session,
    guest_id: int,
    previous_status: Optional[str],
    new_status: str,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    React to a guest's RSVP change.

    Called after the new status is committed. ACTIVE RSVP_CONFIRMED or
    RSVP_DECLINED flows of the guest's event each get a one-guest job, using
    the same per-flow records as the periodic evaluation, so a guest who
    flips back and forth is messaged once per flow. Once the guest has
    responded, pending NO_RESPONSE jobs that nobody needs any more are
    cancelled.

    Returns:
        Summary with the fired trigger, created jobs, cancelled jobs and per-flow errors
    """
    if new_status not in RsvpStatus.ALL:
        raise InvalidJobRequestError(f"Unknown RSVP status '{new_status}'")

    summary = {"ok": True, "trigger": None, "jobs_created": [], "jobs_cancelled": [], "errors": []}
    guest = db.query(Guest).filter(Guest.id == guest_id).first()
    if guest is None:
        automation_logger.warning(f"RSVP change for unknown guest {guest_id}, ignoring")
        return summary

    now = as_utc(now) if now else utcnow()
    trigger = rsvp_trigger_for(previous_status, new_status)
    summary["trigger"] = trigger

    event = db.query(Event).filter(Event.id == guest.event_id).first()
    if trigger is not None and event is not None and event.is_active:
        flows = db.query(AutomationFlow).filter(
            AutomationFlow.event_id == guest.event_id,
            AutomationFlow.trigger == trigger,
            AutomationFlow.status == FlowStatus.ACTIVE
        ).order_by(AutomationFlow.id).all()
        for flow in flows:
            flow_id = flow.id
            if guest_id in notified_guest_ids(db, flow_id):
                continue
            try:
                job = claim_and_create_job(db, flow, [guest_id], now)
            except BulkJobError as e:
                db.rollback()
                automation_logger.error(f"Flow {flow_id} could not create a job for guest {guest_id}: {e}")
                summary["errors"].append({"flow_id": flow_id, "error": str(e)})
                continue
            if job is not None:
                summary["jobs_created"].append({"flow_id": flow_id, "job_id": job.id, "recipients": job.total_recipients})

    if new_status != RsvpStatus.PENDING:
        summary["jobs_cancelled"] = cancel_no_response_jobs(db, guest.event_id)
    return summary
