"""Batch dispatcher - advances a bulk job by one bounded chunk per invocation.

Each call loads the job, takes its lease, sends to the next slice of the
recipient snapshot (paced by the sender's DispatchLimits), records one
delivery log entry per recipient, commits quota usage and moves the cursor.
Callers (HTTP continue endpoint, cron tick) re-invoke until the job is
terminal.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.core.metrics import chunks_processed_counter, pending_jobs_gauge, quota_exhausted_counter
from rsvp_dispatch.core.otel import dispatch_span
from rsvp_dispatch.db.redis import acquire_job_lease, release_job_lease
from rsvp_dispatch.models.account import Account
from rsvp_dispatch.models.bulk_job import BulkMessageJob, JobStatus
from rsvp_dispatch.models.delivery_log import DeliveryStatus
from rsvp_dispatch.models.event import Event
from rsvp_dispatch.services import quota_service
from rsvp_dispatch.services.channels import BaseChannelSender, DispatchLimits, ErrorKind, SendResult, get_channel_sender
from rsvp_dispatch.services.composer import ComposeError, MessageComposer, RenderedMessage, build_template_catalog
from rsvp_dispatch.services.delivery_log import SkipReason, add_entry, add_skipped_entries
from rsvp_dispatch.services.errors import JobBusyError
from rsvp_dispatch.services.job_service import list_pending_jobs, mark_job_failed, transition_job
from rsvp_dispatch.services.recipients import load_guests
from rsvp_dispatch.utils.time import utcnow, display_timezone

logger = logging.getLogger(__name__)
dispatch_logger = logging.getLogger("dispatch")

SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], datetime]


@dataclass
class ChunkResult:
    job_id: str
    status: Optional[str]
    total_recipients: int = 0
    processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    processed_this_call: int = 0
    is_complete: bool = False
    no_op: bool = False
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: BulkMessageJob, processed_this_call: int = 0, no_op: bool = False) -> "ChunkResult":
        return cls(
            job_id=job.id,
            status=job.status,
            total_recipients=job.total_recipients,
            processed=job.processed_count,
            success_count=job.success_count,
            failed_count=job.failed_count,
            skipped_count=job.skipped_count,
            processed_this_call=processed_this_call,
            is_complete=job.status in JobStatus.TERMINAL,
            no_op=no_op,
            error=job.last_error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Attempt:
    recipient_id: int
    address: str
    message: RenderedMessage


async def _send_one(sender: BaseChannelSender, attempt: _Attempt, timeout: float) -> SendResult:
    """One send, bounded by timeout; anything the sender raises fails only this recipient"""
    try:
        return await asyncio.wait_for(sender.send(attempt.address, attempt.message), timeout)
    except asyncio.TimeoutError:
        dispatch_logger.warning(f"Send to recipient {attempt.recipient_id} timed out after {timeout}s")
        return SendResult.failure(ErrorKind.PROVIDER_DOWN, reason="timeout")
    except Exception as e:
        dispatch_logger.error(f"Sender raised for recipient {attempt.recipient_id}: {e}", exc_info=True)
        return SendResult.failure(ErrorKind.UNKNOWN, reason=str(e))


async def send_paced(
    sender: BaseChannelSender,
    attempts: List[_Attempt],
    limits: DispatchLimits,
    sleep: SleepFn = asyncio.sleep,
    timeout: Optional[float] = None
) -> List[SendResult]:
    """
    Send to every attempt respecting the provider's pacing.

    Attempts are split into sub-batches of limits.batch_size. Inside a
    sub-batch at most limits.concurrency sends run at once (a wave); waves are
    separated by wave_delay and sub-batches by batch_delay.

    Returns:
        Results in the same order as attempts
    """
    timeout = timeout or settings.SEND_TIMEOUT_SECONDS
    results: List[SendResult] = []

    for batch_start in range(0, len(attempts), limits.batch_size):
        if batch_start > 0:
            await sleep(limits.batch_delay)
        batch = attempts[batch_start:batch_start + limits.batch_size]

        for wave_start in range(0, len(batch), limits.concurrency):
            if wave_start > 0:
                await sleep(limits.wave_delay)
            wave = batch[wave_start:wave_start + limits.concurrency]
            results.extend(await asyncio.gather(*(_send_one(sender, attempt, timeout) for attempt in wave)))

    return results


def _advance_job(
    db: Session,
    job: BulkMessageJob,
    processed: int,
    success: int = 0,
    failed: int = 0,
    skipped: int = 0,
    last_error: Optional[str] = None
) -> bool:
    """Stage counter and cursor increments on a PROCESSING job.

    Returns False when the job left PROCESSING (cancelled or failed) while the
    chunk was in flight; its counters are then left frozen.
    """
    values = {
        BulkMessageJob.recipient_cursor: BulkMessageJob.recipient_cursor + processed,
        BulkMessageJob.processed_count: BulkMessageJob.processed_count + processed,
        BulkMessageJob.success_count: BulkMessageJob.success_count + success,
        BulkMessageJob.failed_count: BulkMessageJob.failed_count + failed,
        BulkMessageJob.skipped_count: BulkMessageJob.skipped_count + skipped,
        BulkMessageJob.updated_at: utcnow(),
    }
    if last_error is not None:
        values[BulkMessageJob.last_error] = last_error
    updated = db.query(BulkMessageJob).filter(
        BulkMessageJob.id == job.id,
        BulkMessageJob.status == JobStatus.PROCESSING
    ).update(values, synchronize_session=False)
    return updated == 1


def _finish_if_done(db: Session, job: BulkMessageJob, now: datetime, processed_this_call: int) -> ChunkResult:
    db.refresh(job)
    if job.status == JobStatus.PROCESSING and job.processed_count >= job.total_recipients:
        transition_job(db, job.id, [JobStatus.PROCESSING], JobStatus.COMPLETED, values={"completed_at": now})
        db.refresh(job)
        dispatch_logger.info(
            f"Job {job.id} completed: {job.success_count} sent, {job.failed_count} failed, "
            f"{job.skipped_count} skipped of {job.total_recipients}"
        )
    return ChunkResult.from_job(job, processed_this_call=processed_this_call)


def _fail(db: Session, job: BulkMessageJob, error: str) -> ChunkResult:
    mark_job_failed(db, job.id, error)
    db.refresh(job)
    return ChunkResult.from_job(job)


async def _process_chunk(
    db: Session,
    job: BulkMessageJob,
    chunk_size: int,
    limits: Optional[DispatchLimits],
    senders: Mapping[str, BaseChannelSender],
    owned_senders: Dict[str, BaseChannelSender],
    sleep: SleepFn,
    clock: ClockFn
) -> ChunkResult:
    # Status may have changed between the first read and taking the lease
    db.refresh(job)
    if job.is_terminal:
        return ChunkResult.from_job(job, no_op=True)

    event = db.query(Event).filter(Event.id == job.event_id).first()
    if event is None:
        return _fail(db, job, f"Event {job.event_id} no longer exists")
    account = db.query(Account).filter(Account.id == job.account_id).first()
    if account is None:
        return _fail(db, job, f"Account {job.account_id} no longer exists")

    composer = MessageComposer(build_template_catalog(db, job.account_id), display_tz=display_timezone())
    if not composer.has_template(job.template_id):
        return _fail(db, job, f"{ComposeError.TEMPLATE_NOT_FOUND}: template '{job.template_id}' does not exist")

    now = clock()
    if job.status == JobStatus.PENDING:
        transition_job(db, job.id, [JobStatus.PENDING], JobStatus.PROCESSING, values={"started_at": now})
        db.refresh(job)
        if job.status != JobStatus.PROCESSING:
            return ChunkResult.from_job(job, no_op=True)

    snapshot = list(job.recipient_ids or [])
    cursor = job.recipient_cursor
    if cursor >= len(snapshot):
        return _finish_if_done(db, job, now, 0)

    quota_service.get_or_create_ledger(job.account_id, db, now)
    budget = quota_service.remaining(job.account_id, job.channel, db, now)

    if budget == 0:
        rest = snapshot[cursor:]
        add_skipped_entries(db, job, rest, SkipReason.QUOTA_EXHAUSTED, now)
        advanced = _advance_job(db, job, processed=len(rest), skipped=len(rest),
                                last_error=f"{job.channel} quota exhausted, {len(rest)} recipients skipped")
        db.commit()
        quota_exhausted_counter.labels(channel=job.channel).inc()
        dispatch_logger.warning(f"Job {job.id}: {job.channel} quota exhausted, skipped {len(rest)} recipients")
        return _finish_if_done(db, job, clock(), len(rest) if advanced else 0)

    # Slice: at most chunk_size recipients and never more sendable ones than the quota allows
    window = snapshot[cursor:cursor + chunk_size]
    guests = load_guests(db, job.event_id, window)
    consumed = 0
    skipped = {}
    attempts: List[_Attempt] = []
    compose_failures = {}

    for recipient_id in window:
        guest = guests.get(recipient_id)
        if guest is None:
            skipped[recipient_id] = SkipReason.RECIPIENT_REMOVED
        elif not (guest.phone_number or "").strip():
            skipped[recipient_id] = SkipReason.NO_ADDRESS
        else:
            if budget != quota_service.UNLIMITED and len(attempts) + len(compose_failures) >= budget:
                break
            try:
                message = composer.compose(job.template_id, guest, event, job.overrides or {}, job.message_format)
            except ComposeError as e:
                compose_failures[recipient_id] = e.code
            else:
                attempts.append(_Attempt(recipient_id, guest.phone_number.strip(), message))
        consumed += 1

    sender = senders.get(job.channel)
    if sender is None and attempts:
        sender = owned_senders.setdefault(job.channel, get_channel_sender(job.channel))
    results = await send_paced(sender, attempts, limits or sender.RATE_LIMITS, sleep) if attempts else []

    attempted_at = clock()
    success = 0
    failed = len(compose_failures)
    for attempt, result in zip(attempts, results):
        if result.delivered:
            success += 1
            add_entry(db, job, attempt.recipient_id, DeliveryStatus.SENT,
                      provider_message_id=result.provider_message_id,
                      provider_response=result.provider_response,
                      attempted_at=attempted_at)
        else:
            failed += 1
            add_entry(db, job, attempt.recipient_id, DeliveryStatus.FAILED,
                      error_kind=result.error_kind or ErrorKind.UNKNOWN,
                      provider_response=result.provider_response,
                      attempted_at=attempted_at)
    for recipient_id, code in compose_failures.items():
        add_entry(db, job, recipient_id, DeliveryStatus.FAILED, error_kind=code, attempted_at=attempted_at)
    for recipient_id, reason in skipped.items():
        add_entry(db, job, recipient_id, DeliveryStatus.SKIPPED, error_kind=reason, attempted_at=attempted_at)

    quota_service.commit_usage(job.account_id, job.channel, success, db, now, commit=False)
    advanced = _advance_job(db, job, processed=consumed, success=success, failed=failed, skipped=len(skipped))
    db.commit()
    if not advanced:
        dispatch_logger.info(
            f"Job {job.id} left PROCESSING during the chunk, {success} sends logged and counted "
            f"against quota but job counters left unchanged"
        )
        return _finish_if_done(db, job, clock(), 0)

    chunks_processed_counter.inc()
    dispatch_logger.info(
        f"Job {job.id} chunk: {consumed} processed ({success} sent, {failed} failed, "
        f"{len(skipped)} skipped), cursor {cursor} -> {cursor + consumed} of {len(snapshot)}"
    )
    return _finish_if_done(db, job, clock(), consumed)


async def process_job_chunk(
    job_id: str,
    db: Session,
    chunk_size: Optional[int] = None,
    limits: Optional[DispatchLimits] = None,
    senders: Optional[Mapping[str, BaseChannelSender]] = None,
    sleep: SleepFn = asyncio.sleep,
    clock: ClockFn = utcnow
) -> ChunkResult:
    """
    Process the next chunk of a job.

    Args:
        job_id: Job to advance
        db: Database session
        chunk_size: Max recipients handled by this call (DISPATCH_CHUNK_SIZE by default)
        limits: Pacing; the sender's RATE_LIMITS when omitted
        senders: Channel -> sender overrides; senders built here are closed afterwards
        sleep: Awaitable used for pacing delays
        clock: Source of the current time

    Returns:
        ChunkResult with cumulative counters. Missing or finished jobs give a
        no-op result instead of an error.

    Raises:
        JobBusyError: Another invocation is processing the job
    """
    chunk_size = chunk_size or settings.DISPATCH_CHUNK_SIZE
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    job = db.query(BulkMessageJob).filter(BulkMessageJob.id == job_id).first()
    if job is None:
        return ChunkResult(job_id=job_id, status=None, no_op=True, error="Job not found")
    if job.is_terminal:
        return ChunkResult.from_job(job, no_op=True)

    lease = acquire_job_lease(job_id)
    if lease is None:
        raise JobBusyError(job_id)

    owned_senders: Dict[str, BaseChannelSender] = {}
    try:
        with dispatch_span("bulk_job.chunk", job_id=job_id, channel=job.channel, chunk_size=chunk_size) as span:
            result = await _process_chunk(db, job, chunk_size, limits, senders or {}, owned_senders, sleep, clock)
            span.set_attribute("rsvp.processed_this_call", result.processed_this_call)
            span.set_attribute("rsvp.status", result.status or "")
            return result
    except SQLAlchemyError as e:
        dispatch_logger.error(f"Database error while processing job {job_id}: {e}", exc_info=True)
        mark_job_failed(db, job_id, f"Database error: {e}")
        db.expire_all()
        job = db.query(BulkMessageJob).filter(BulkMessageJob.id == job_id).first()
        return ChunkResult.from_job(job)
    finally:
        for sender in owned_senders.values():
            await sender.aclose()
        release_job_lease(job_id, lease)


async def process_pending_jobs(
    db: Session,
    max_jobs: Optional[int] = None,
    **chunk_kwargs
) -> Dict[str, Any]:
    """Advance the oldest unfinished jobs by one chunk each (cron tick)"""
    max_jobs = max_jobs or settings.CRON_MAX_JOBS_PER_TICK
    jobs = list_pending_jobs(db, limit=max_jobs)
    job_ids = [job.id for job in jobs]

    results = []
    busy = 0
    for job_id in job_ids:
        try:
            result = await process_job_chunk(job_id, db, **chunk_kwargs)
        except JobBusyError:
            busy += 1
            dispatch_logger.info(f"Job {job_id} is being processed elsewhere, skipping this tick")
            continue
        results.append(result.to_dict())

    pending_jobs_gauge.set(
        db.query(BulkMessageJob).filter(BulkMessageJob.status.in_(JobStatus.ACTIVE)).count()
    )
    return {"ok": True, "jobs_processed": len(results), "jobs_busy": busy, "results": results}
