"""Batch dispatcher tests"""
import asyncio
import pytest

from conftest import FakeSender, SleepRecorder, guest_phone
from rsvp_dispatch.db.redis import acquire_job_lease
from rsvp_dispatch.models.account import PlanTier
from rsvp_dispatch.models.bulk_job import BulkMessageJob, Channel, JobStatus, MessageFormat, MessageKind
from rsvp_dispatch.models.delivery_log import DeliveryLogEntry, DeliveryStatus
from rsvp_dispatch.models.quota_ledger import QuotaLedger
from rsvp_dispatch.services import quota_service
from rsvp_dispatch.services.channels import BaseChannelSender, DispatchLimits, ErrorKind, SendResult
from rsvp_dispatch.services.composer import RenderedMessage
from rsvp_dispatch.services.delivery_log import SkipReason, summarize_job
from rsvp_dispatch.services.dispatcher import _Attempt, process_job_chunk, process_pending_jobs, send_paced
from rsvp_dispatch.services.errors import JobBusyError
from rsvp_dispatch.services.job_service import cancel_job, create_bulk_job


async def run_chunk(db, job_id, sender, chunk_size=10, sleep=None):
    return await process_job_chunk(
        job_id, db,
        chunk_size=chunk_size,
        senders={Channel.CHAT: sender, Channel.TEXT: sender},
        sleep=sleep or SleepRecorder(),
    )


def log_entries(db, job_id):
    return db.query(DeliveryLogEntry).filter(DeliveryLogEntry.job_id == job_id).order_by(DeliveryLogEntry.id).all()


def assert_conserved(result):
    assert result.success_count + result.failed_count <= result.processed
    assert result.success_count + result.failed_count + result.skipped_count == result.processed
    assert result.processed <= result.total_recipients


@pytest.mark.critical
class TestChunkedProgress:
    """Jobs advance one bounded chunk per call"""

    @pytest.mark.asyncio
    async def test_23_recipients_in_chunks_of_10(self, db_session, account, event, make_guests, fake_sender):
        """Three continue calls give processed counts 10, 20, 23 and a COMPLETED job"""
        make_guests(event, 23)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        processed = []
        for _ in range(3):
            result = await run_chunk(db_session, job.id, fake_sender)
            assert_conserved(result)
            processed.append(result.processed)

        assert processed == [10, 20, 23]
        assert result.status == JobStatus.COMPLETED
        assert result.is_complete is True
        assert result.success_count == 23
        assert len(fake_sender.sent) == 23

        db_session.refresh(job)
        assert job.completed_at is not None
        assert job.started_at is not None

    @pytest.mark.asyncio
    async def test_recipients_are_sent_in_snapshot_order(self, db_session, account, event, make_guests, fake_sender):
        """Sends follow the order fixed when the job was created"""
        guests = make_guests(event, 12)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        await run_chunk(db_session, job.id, fake_sender, chunk_size=5)
        await run_chunk(db_session, job.id, fake_sender, chunk_size=5)
        await run_chunk(db_session, job.id, fake_sender, chunk_size=5)

        assert [address for address, _ in fake_sender.sent] == [guest.phone_number for guest in guests]
        assert [entry.recipient_id for entry in log_entries(db_session, job.id)] == [guest.id for guest in guests]

    @pytest.mark.asyncio
    async def test_guests_added_after_creation_are_not_sent(self, db_session, account, event, make_guests, fake_sender):
        """The recipient snapshot is immutable once the job exists"""
        make_guests(event, 3)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        make_guests(event, 4)

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.total_recipients == 3
        assert result.processed == 3
        assert len(fake_sender.sent) == 3

    @pytest.mark.asyncio
    async def test_job_with_no_recipients_completes(self, db_session, account, event, fake_sender):
        """An empty snapshot completes on the first continue"""
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.status == JobStatus.COMPLETED
        assert result.total_recipients == 0
        assert fake_sender.sent == []


@pytest.mark.critical
class TestQuotaExhaustion:
    """Quota limits sends; the rest of the job is skipped, not failed"""

    @pytest.mark.asyncio
    async def test_remaining_five_of_ten(self, db_session, make_account, make_event, make_guests, fake_sender):
        """Only 5 are sent, the other 5 are SKIPPED and the job still completes"""
        account = make_account(PlanTier.BASIC)
        event = make_event(account)
        make_guests(event, 10)
        ledger = quota_service.get_or_create_ledger(account.id, db_session)
        ledger.chat_sent = 645
        db_session.commit()
        assert quota_service.remaining(account.id, Channel.CHAT, db_session) == 5

        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        result = None
        for _ in range(5):
            result = await run_chunk(db_session, job.id, fake_sender)
            assert_conserved(result)
            if result.is_complete:
                break

        assert result.status == JobStatus.COMPLETED
        assert result.success_count == 5
        assert result.skipped_count == 5
        assert result.failed_count == 0
        assert "quota exhausted" in result.error
        assert len(fake_sender.sent) == 5

        skipped = [e for e in log_entries(db_session, job.id) if e.status == DeliveryStatus.SKIPPED]
        assert len(skipped) == 5
        assert {e.error_kind for e in skipped} == {SkipReason.QUOTA_EXHAUSTED}
        assert quota_service.remaining(account.id, Channel.CHAT, db_session) == 0

    @pytest.mark.asyncio
    async def test_exhausted_quota_skips_everything_without_sending(self, db_session, make_account, make_event, make_guests, fake_sender):
        """With no quota left nothing is sent and every recipient is skipped in one step"""
        account = make_account(PlanTier.ADVANCED)
        event = make_event(account)
        make_guests(event, 7)
        ledger = quota_service.get_or_create_ledger(account.id, db_session)
        ledger.text_sent = 30
        db_session.commit()

        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.TEXT)
        result = await run_chunk(db_session, job.id, fake_sender, chunk_size=2)

        assert result.status == JobStatus.COMPLETED
        assert result.processed == 7
        assert result.skipped_count == 7
        assert fake_sender.sent == []

    @pytest.mark.asyncio
    async def test_failed_sends_do_not_consume_quota(self, db_session, make_account, make_event, make_guests):
        """Only successful sends are committed to the ledger"""
        account = make_account(PlanTier.BASIC)
        event = make_event(account)
        make_guests(event, 4)
        sender = FakeSender(fail_addresses={guest_phone(1), guest_phone(2)})

        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        await run_chunk(db_session, job.id, sender)

        ledger = db_session.query(QuotaLedger).filter(QuotaLedger.account_id == account.id).one()
        assert ledger.chat_sent == 2
        assert quota_service.remaining(account.id, Channel.CHAT, db_session) == 648

    @pytest.mark.asyncio
    async def test_unlimited_plan_counts_usage(self, db_session, account, event, make_guests, fake_sender):
        """Unlimited accounts are never skipped but usage is still recorded"""
        make_guests(event, 6)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.success_count == 6
        assert quota_service.remaining(account.id, Channel.CHAT, db_session) == quota_service.UNLIMITED
        ledger = db_session.query(QuotaLedger).filter(QuotaLedger.account_id == account.id).one()
        assert ledger.chat_sent == 6


@pytest.mark.critical
class TestCancellation:
    """Cancelled jobs are never resumed"""

    @pytest.mark.asyncio
    async def test_cancel_after_first_chunk(self, db_session, account, event, make_guests, fake_sender):
        """The next continue is a no-op and processed stays where it was"""
        make_guests(event, 30)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        first = await run_chunk(db_session, job.id, fake_sender)
        assert first.processed == 10

        cancelled = cancel_job(db_session, job.id, account.id)
        assert cancelled["cancelled"] is True

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.no_op is True
        assert result.status == JobStatus.CANCELLED
        assert result.processed == 10
        assert len(fake_sender.sent) == 10
        assert len(log_entries(db_session, job.id)) == 10

    @pytest.mark.asyncio
    async def test_cancel_during_chunk_freezes_counters(self, db_session, account, event, make_guests):
        """Sends already made are logged and counted against quota, the job counters stay put"""
        make_guests(event, 10)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        class CancelOnFirstSend(FakeSender):
            async def send(self, address, message):
                if not self.sent:
                    cancel_job(db_session, job.id, account.id)
                return await super().send(address, message)

        sender = CancelOnFirstSend()
        result = await run_chunk(db_session, job.id, sender)

        assert result.status == JobStatus.CANCELLED
        assert result.processed == 0
        assert result.success_count == 0
        assert result.processed_this_call == 0
        db_session.refresh(job)
        assert job.recipient_cursor == 0
        assert job.completed_at is not None

        entries = log_entries(db_session, job.id)
        assert len(entries) == 10
        assert all(entry.status == DeliveryStatus.SENT for entry in entries)
        ledger = db_session.query(QuotaLedger).filter(QuotaLedger.account_id == account.id).one()
        assert ledger.chat_sent == 10

        again = await run_chunk(db_session, job.id, sender)
        assert again.no_op is True
        assert len(sender.sent) == 10

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, db_session, account, event, make_guests, fake_sender):
        """A PENDING job can be cancelled and is never started"""
        make_guests(event, 3)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        cancel_job(db_session, job.id, account.id)

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.no_op is True
        assert result.processed == 0
        db_session.refresh(job)
        assert job.started_at is None


@pytest.mark.critical
class TestRecipientOutcomes:
    """Per-recipient problems never stop the job"""

    @pytest.mark.asyncio
    async def test_recipient_without_phone_is_skipped(self, db_session, account, event, make_guests):
        """The guest without a number is SKIPPED, the other 4 are attempted"""
        guests = make_guests(event, 5, without_phone={2})
        sender = FakeSender(fail_addresses={guest_phone(4)})
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        result = await run_chunk(db_session, job.id, sender)

        assert result.status == JobStatus.COMPLETED
        assert len(sender.sent) == 4
        assert result.success_count == 3
        assert result.failed_count == 1
        assert result.skipped_count == 1

        entries = {e.recipient_id: e for e in log_entries(db_session, job.id)}
        assert entries[guests[2].id].status == DeliveryStatus.SKIPPED
        assert entries[guests[2].id].error_kind == SkipReason.NO_ADDRESS
        assert entries[guests[4].id].status == DeliveryStatus.FAILED
        assert entries[guests[4].id].error_kind == ErrorKind.INVALID_ADDRESS

    @pytest.mark.asyncio
    async def test_guest_deleted_after_snapshot_is_skipped(self, db_session, account, event, make_guests, fake_sender):
        """Removed guests are recorded as RECIPIENT_REMOVED"""
        guests = make_guests(event, 3)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        removed_id = guests[1].id
        db_session.delete(guests[1])
        db_session.commit()

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.success_count == 2
        assert result.skipped_count == 1
        entry = db_session.query(DeliveryLogEntry).filter(DeliveryLogEntry.recipient_id == removed_id).one()
        assert entry.error_kind == SkipReason.RECIPIENT_REMOVED

    @pytest.mark.asyncio
    async def test_compose_failure_fails_only_that_recipient(self, db_session, account, make_event, make_guests, fake_sender):
        """An image message without an image fails each recipient, the job still completes"""
        event = make_event(account, image_url=None)
        make_guests(event, 3)
        job = create_bulk_job(
            db_session, account.id, event.id, MessageKind.INVITE,
            channel=Channel.CHAT, message_format=MessageFormat.IMAGE
        )

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.status == JobStatus.COMPLETED
        assert result.failed_count == 3
        assert fake_sender.sent == []
        assert {e.error_kind for e in log_entries(db_session, job.id)} == {"MISSING_REQUIRED_FIELD"}
        ledger = quota_service.get_or_create_ledger(account.id, db_session)
        assert ledger.chat_sent == 0

    @pytest.mark.asyncio
    async def test_sender_exception_is_recorded_as_unknown(self, db_session, account, event, make_guests):
        """A sender that raises fails that recipient with UNKNOWN"""

        class ExplodingSender(FakeSender):
            async def send(self, address, message):
                if address == guest_phone(0):
                    raise RuntimeError("socket closed")
                return await super().send(address, message)

        make_guests(event, 3)
        sender = ExplodingSender()
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        result = await run_chunk(db_session, job.id, sender)

        assert result.failed_count == 1
        assert result.success_count == 2
        failed = [e for e in log_entries(db_session, job.id) if e.status == DeliveryStatus.FAILED]
        assert failed[0].error_kind == ErrorKind.UNKNOWN


@pytest.mark.critical
class TestIdempotenceAndResumability:
    """Repeated calls are safe and chunking does not change the outcome"""

    @pytest.mark.asyncio
    async def test_continue_on_completed_job_is_stable(self, db_session, account, event, make_guests, fake_sender):
        """Two calls on a finished job return identical results and add no log entries"""
        make_guests(event, 4)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        await run_chunk(db_session, job.id, fake_sender)
        entries_before = len(log_entries(db_session, job.id))

        first = await run_chunk(db_session, job.id, fake_sender)
        second = await run_chunk(db_session, job.id, fake_sender)

        assert first.to_dict() == second.to_dict()
        assert first.no_op is True
        assert len(log_entries(db_session, job.id)) == entries_before
        assert len(fake_sender.sent) == 4

    @pytest.mark.asyncio
    async def test_continue_on_unknown_job_is_noop(self, db_session, fake_sender):
        """A missing job gives a benign no-op result"""
        result = await run_chunk(db_session, "does-not-exist", fake_sender)

        assert result.no_op is True
        assert result.status is None
        assert result.error == "Job not found"

    @pytest.mark.asyncio
    async def test_three_small_chunks_match_one_large(self, db_session, account, make_event, make_guests):
        """Chunk size 4 three times gives the same counts as chunk size 10 once"""
        failing = {guest_phone(3), guest_phone(7)}

        event_a = make_event(account)
        make_guests(event_a, 10, without_phone={5})
        job_a = create_bulk_job(db_session, account.id, event_a.id, MessageKind.INVITE, channel=Channel.CHAT)
        sender_a = FakeSender(fail_addresses=failing)
        for _ in range(3):
            result_a = await run_chunk(db_session, job_a.id, sender_a, chunk_size=4)

        event_b = make_event(account)
        make_guests(event_b, 10, without_phone={5})
        job_b = create_bulk_job(db_session, account.id, event_b.id, MessageKind.INVITE, channel=Channel.CHAT)
        result_b = await run_chunk(db_session, job_b.id, FakeSender(fail_addresses=failing), chunk_size=10)

        def counts(result):
            return (result.status, result.processed, result.success_count, result.failed_count, result.skipped_count)

        assert counts(result_a) == counts(result_b) == (JobStatus.COMPLETED, 10, 7, 2, 1)
        assert summarize_job(db_session, job_a.id) == summarize_job(db_session, job_b.id)

    @pytest.mark.asyncio
    async def test_at_most_one_entry_per_recipient(self, db_session, account, event, make_guests, fake_sender):
        """Sequential continues never log the same recipient twice"""
        make_guests(event, 9)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        for _ in range(6):
            await run_chunk(db_session, job.id, fake_sender, chunk_size=2)

        recipients = [e.recipient_id for e in log_entries(db_session, job.id)]
        assert len(recipients) == len(set(recipients)) == 9


@pytest.mark.high
class TestLeaseAndFatalErrors:
    """Concurrent invocations are rejected; job-level errors fail the job"""

    @pytest.mark.asyncio
    async def test_busy_job_is_rejected(self, db_session, account, event, make_guests, fake_sender):
        """A second invocation while the lease is held raises JobBusyError"""
        make_guests(event, 3)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        assert acquire_job_lease(job.id) is not None

        with pytest.raises(JobBusyError):
            await run_chunk(db_session, job.id, fake_sender)
        assert fake_sender.sent == []

    @pytest.mark.asyncio
    async def test_lease_is_released_after_chunk(self, db_session, account, event, make_guests, fake_sender, mock_redis):
        """The lease key is gone once the chunk returns"""
        make_guests(event, 3)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        await run_chunk(db_session, job.id, fake_sender, chunk_size=1)

        assert mock_redis.get(f"bulk_job:lease:{job.id}") is None
        assert acquire_job_lease(job.id) is not None

    @pytest.mark.asyncio
    async def test_event_deleted_mid_job_fails_job(self, db_session, account, event, make_guests, fake_sender):
        """Deleting the event sets FAILED with a message and stops sending"""
        make_guests(event, 5)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        await run_chunk(db_session, job.id, fake_sender, chunk_size=2)

        db_session.delete(event)
        db_session.commit()
        result = await run_chunk(db_session, job.id, fake_sender, chunk_size=2)

        assert result.status == JobStatus.FAILED
        assert result.is_complete is True
        assert "no longer exists" in result.error
        assert result.processed == 2
        assert len(fake_sender.sent) == 2

    @pytest.mark.asyncio
    async def test_missing_custom_template_fails_job(self, db_session, account, event, make_guests, fake_sender):
        """A job whose template disappeared fails instead of sending"""
        make_guests(event, 2)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        job.template_id = "9999"
        db_session.commit()

        result = await run_chunk(db_session, job.id, fake_sender)

        assert result.status == JobStatus.FAILED
        assert result.error.startswith("TEMPLATE_NOT_FOUND")


@pytest.mark.high
class TestPacing:
    """Sub-batches, concurrency waves and timeouts"""

    def _attempts(self, count):
        message = RenderedMessage(body="hi")
        return [_Attempt(recipient_id=i, address=guest_phone(i), message=message) for i in range(count)]

    @pytest.mark.asyncio
    async def test_sleep_pattern(self):
        """Waves inside a sub-batch wait wave_delay, sub-batches wait batch_delay"""
        sender = FakeSender()
        sleep = SleepRecorder()
        limits = DispatchLimits(batch_size=4, concurrency=2, batch_delay=1.1, wave_delay=0.2)

        results = await send_paced(sender, self._attempts(10), limits, sleep)

        assert len(results) == 10
        assert sleep.calls == [0.2, 1.1, 0.2, 1.1]
        assert sender.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_results_keep_attempt_order(self):
        sender = FakeSender(fail_addresses={guest_phone(1)})
        results = await send_paced(sender, self._attempts(3), DispatchLimits(wave_delay=0, batch_delay=0), SleepRecorder())

        assert [r.delivered for r in results] == [True, False, True]

    @pytest.mark.asyncio
    async def test_hung_send_times_out(self):
        """A send that never returns is failed as PROVIDER_DOWN"""

        class HangingSender(BaseChannelSender):
            async def send(self, address, message):
                await asyncio.sleep(10)
                return SendResult(delivered=True)

            async def test_connection(self):
                return True

        results = await send_paced(HangingSender(), self._attempts(2), DispatchLimits(), SleepRecorder(), timeout=0.01)

        assert [r.error_kind for r in results] == [ErrorKind.PROVIDER_DOWN, ErrorKind.PROVIDER_DOWN]

    @pytest.mark.asyncio
    async def test_dispatcher_uses_sender_rate_limits(self, db_session, account, event, make_guests):
        """Without explicit limits the sender's RATE_LIMITS drive the delays"""

        class SlowProviderSender(FakeSender):
            RATE_LIMITS = DispatchLimits(batch_size=3, concurrency=3, batch_delay=2.5, wave_delay=0)

        make_guests(event, 7)
        sleep = SleepRecorder()
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)

        await run_chunk(db_session, job.id, SlowProviderSender(), sleep=sleep)

        assert sleep.calls == [2.5, 2.5]

    def test_invalid_limits_rejected(self):
        with pytest.raises(ValueError):
            DispatchLimits(batch_size=0)
        with pytest.raises(ValueError):
            DispatchLimits(batch_delay=-1)


@pytest.mark.medium
class TestPendingJobsTick:
    """Cron tick over unfinished jobs"""

    @pytest.mark.asyncio
    async def test_tick_advances_each_pending_job(self, db_session, account, make_event, make_guests, fake_sender):
        event_a = make_event(account)
        event_b = make_event(account)
        make_guests(event_a, 3)
        make_guests(event_b, 15)
        job_a = create_bulk_job(db_session, account.id, event_a.id, MessageKind.INVITE, channel=Channel.CHAT)
        job_b = create_bulk_job(db_session, account.id, event_b.id, MessageKind.INVITE, channel=Channel.CHAT)

        summary = await process_pending_jobs(
            db_session, senders={Channel.CHAT: fake_sender}, sleep=SleepRecorder(), chunk_size=10
        )

        assert summary["jobs_processed"] == 2
        db_session.expire_all()
        assert db_session.get(BulkMessageJob, job_a.id).status == JobStatus.COMPLETED
        assert db_session.get(BulkMessageJob, job_b.id).processed_count == 10

    @pytest.mark.asyncio
    async def test_tick_skips_busy_jobs(self, db_session, account, event, make_guests, fake_sender):
        make_guests(event, 2)
        job = create_bulk_job(db_session, account.id, event.id, MessageKind.INVITE, channel=Channel.CHAT)
        acquire_job_lease(job.id)

        summary = await process_pending_jobs(db_session, senders={Channel.CHAT: fake_sender}, sleep=SleepRecorder())

        assert summary["jobs_busy"] == 1
        assert summary["jobs_processed"] == 0
