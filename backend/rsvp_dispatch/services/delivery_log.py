"""Delivery log - append-only record of every attempt"""
from sqlalchemy import func
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from rsvp_dispatch.core.metrics import deliveries_counter, provider_errors_counter
from rsvp_dispatch.models.bulk_job import BulkMessageJob
from rsvp_dispatch.models.delivery_log import DeliveryLogEntry, DeliveryStatus
from rsvp_dispatch.utils.time import utcnow, isoformat, as_utc

logger = logging.getLogger(__name__)


class SkipReason:
    NO_ADDRESS = "NO_ADDRESS"
    RECIPIENT_REMOVED = "RECIPIENT_REMOVED"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"


def add_entry(
    db: Session,
    job: BulkMessageJob,
    recipient_id: int,
    status: str,
    error_kind: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    provider_response: Optional[Dict[str, Any]] = None,
    attempted_at: Optional[datetime] = None
) -> DeliveryLogEntry:
    """Stage one entry in the caller's transaction; the caller commits"""
    if status not in DeliveryStatus.ALL:
        raise ValueError(f"Unknown delivery status '{status}'")

    entry = DeliveryLogEntry(
        job_id=job.id,
        recipient_id=recipient_id,
        channel=job.channel,
        message_kind=job.message_kind,
        status=status,
        error_kind=error_kind,
        provider_message_id=provider_message_id,
        provider_response=provider_response,
        attempted_at=attempted_at or utcnow(),
    )
    db.add(entry)

    deliveries_counter.labels(channel=job.channel, status=status).inc()
    if status == DeliveryStatus.FAILED:
        provider_errors_counter.labels(channel=job.channel, error_kind=error_kind or "UNKNOWN").inc()
    return entry


def add_skipped_entries(
    db: Session,
    job: BulkMessageJob,
    recipient_ids: List[int],
    reason: str,
    attempted_at: Optional[datetime] = None
) -> int:
    """Stage SKIPPED entries for many recipients with one bulk insert"""
    if not recipient_ids:
        return 0
    attempted_at = attempted_at or utcnow()
    db.bulk_insert_mappings(DeliveryLogEntry, [
        {
            "job_id": job.id,
            "recipient_id": recipient_id,
            "channel": job.channel,
            "message_kind": job.message_kind,
            "status": DeliveryStatus.SKIPPED,
            "error_kind": reason,
            "attempted_at": attempted_at,
        }
        for recipient_id in recipient_ids
    ])
    deliveries_counter.labels(channel=job.channel, status=DeliveryStatus.SKIPPED).inc(len(recipient_ids))
    return len(recipient_ids)


def entry_to_dict(entry: DeliveryLogEntry) -> Dict[str, Any]:
    return {
        "job_id": entry.job_id,
        "recipient_id": entry.recipient_id,
        "channel": entry.channel,
        "message_kind": entry.message_kind,
        "status": entry.status,
        "error_kind": entry.error_kind,
        "provider_message_id": entry.provider_message_id,
        "attempted_at": isoformat(entry.attempted_at),
    }


def list_job_deliveries(db: Session, job_id: str, status: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
    """Entries of one job in attempt order"""
    query = db.query(DeliveryLogEntry).filter(DeliveryLogEntry.job_id == job_id)
    if status:
        query = query.filter(DeliveryLogEntry.status == status)
    entries = query.order_by(DeliveryLogEntry.id.asc()).limit(limit).all()
    return [entry_to_dict(entry) for entry in entries]


def get_guest_history(db: Session, recipient_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    """Every attempt made for one guest across jobs, newest first"""
    entries = db.query(DeliveryLogEntry).filter(
        DeliveryLogEntry.recipient_id == recipient_id
    ).order_by(DeliveryLogEntry.attempted_at.desc(), DeliveryLogEntry.id.desc()).limit(limit).all()
    return [entry_to_dict(entry) for entry in entries]


def last_sent_by_guest(db: Session, recipient_ids: List[int]) -> Dict[int, datetime]:
    """When each guest last received any message successfully; guests never reached are absent"""
    if not recipient_ids:
        return {}
    rows = db.query(
        DeliveryLogEntry.recipient_id, func.max(DeliveryLogEntry.attempted_at)
    ).filter(
        DeliveryLogEntry.recipient_id.in_(list(recipient_ids)),
        DeliveryLogEntry.status == DeliveryStatus.SENT
    ).group_by(DeliveryLogEntry.recipient_id).all()
    return {recipient_id: as_utc(sent_at) for recipient_id, sent_at in rows}


def summarize_job(db: Session, job_id: str) -> Dict[str, int]:
    """Count entries per status; should match the job's counters"""
    summary = {status: 0 for status in DeliveryStatus.ALL}
    for entry_status, in db.query(DeliveryLogEntry.status).filter(DeliveryLogEntry.job_id == job_id).all():
        summary[entry_status] = summary.get(entry_status, 0) + 1
    return summary
