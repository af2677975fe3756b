"""Recipient resolution - turns a recipient filter into the ordered guest snapshot of a job"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from rsvp_dispatch.models.bulk_job import BulkMessageJob, MessageKind
from rsvp_dispatch.models.delivery_log import DeliveryLogEntry, DeliveryStatus
from rsvp_dispatch.models.guest import Guest, RsvpStatus

logger = logging.getLogger(__name__)

# Applied when the caller does not filter by RSVP status explicitly
DEFAULT_RSVP_FILTER = {
    MessageKind.REMINDER: [RsvpStatus.PENDING],
    MessageKind.EVENT_DAY: [RsvpStatus.ACCEPTED],
    MessageKind.THANK_YOU: [RsvpStatus.ACCEPTED],
}


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def already_invited_guest_ids(db: Session, event_id: int) -> set:
    """Guests of the event that already received an invite successfully"""
    rows = db.query(DeliveryLogEntry.recipient_id).join(
        BulkMessageJob, BulkMessageJob.id == DeliveryLogEntry.job_id
    ).filter(
        BulkMessageJob.event_id == event_id,
        DeliveryLogEntry.message_kind == MessageKind.INVITE,
        DeliveryLogEntry.status == DeliveryStatus.SENT
    ).distinct().all()
    return {row[0] for row in rows}


def resolve_recipients(
    db: Session,
    event_id: int,
    message_kind: str,
    recipient_filter: Optional[Dict[str, Any]] = None
) -> List[int]:
    """
    Resolve the guest ids a new job will address, in a stable order.

    Supported filter keys:
        guestIds: restrict to these guests (must belong to the event)
        rsvpStatus: one status or a list of statuses

    Kind rules: invites skip guests already invited successfully, reminders
    only target pending RSVPs, event-day and thank-you messages only target
    accepted guests unless rsvpStatus is given.

    Guests without a phone number stay in the snapshot; the dispatcher
    records them as skipped.
    """
    recipient_filter = recipient_filter or {}
    query = db.query(Guest.id).filter(Guest.event_id == event_id)

    if recipient_filter.get("guestIds") is not None:
        guest_ids = _as_list(recipient_filter["guestIds"])
        if not guest_ids:
            return []
        query = query.filter(Guest.id.in_(guest_ids))

    statuses = _as_list(recipient_filter.get("rsvpStatus")) or DEFAULT_RSVP_FILTER.get(message_kind, [])
    if statuses:
        query = query.filter(Guest.rsvp_status.in_(statuses))

    ids = [row[0] for row in query.order_by(Guest.id).all()]

    if message_kind == MessageKind.INVITE:
        invited = already_invited_guest_ids(db, event_id)
        ids = [guest_id for guest_id in ids if guest_id not in invited]

    logger.info(f"Resolved {len(ids)} recipients for event {event_id} ({message_kind})")
    return ids


def load_guests(db: Session, event_id: int, guest_ids: Sequence[int]) -> Dict[int, Guest]:
    """Guests of the event by id; ids removed since the snapshot are absent"""
    if not guest_ids:
        return {}
    guests = db.query(Guest).filter(Guest.event_id == event_id, Guest.id.in_(list(guest_ids))).all()
    return {guest.id: guest for guest in guests}
