"""Quota ledger tests"""
import pytest
from datetime import datetime, timezone

from conftest import TestSessionLocal
from rsvp_dispatch.models.account import PlanTier
from rsvp_dispatch.models.bulk_job import Channel
from rsvp_dispatch.models.quota_ledger import QuotaLedger
from rsvp_dispatch.services.quota_service import (
    UNLIMITED, add_bonus, commit_usage, get_or_create_ledger, get_plan_limit, get_usage_summary, remaining
)

MAY = datetime(2026, 5, 14, 12, 0, tzinfo=timezone.utc)
JUNE = datetime(2026, 6, 1, 0, 0, 5, tzinfo=timezone.utc)


@pytest.mark.critical
class TestQuotaService:
    """Test remaining/commit semantics"""

    def test_remaining_uses_plan_limits(self, db_session, make_account):
        """Each tier gets its monthly allowance per channel"""
        basic = make_account(PlanTier.BASIC)
        premium = make_account(PlanTier.PREMIUM)

        assert remaining(basic.id, Channel.CHAT, db_session, MAY) == 650
        assert remaining(basic.id, Channel.TEXT, db_session, MAY) == 0
        assert remaining(premium.id, Channel.CHAT, db_session, MAY) == 1000
        assert remaining(premium.id, Channel.TEXT, db_session, MAY) == 50

    def test_commit_decreases_remaining_by_count(self, db_session, make_account):
        """remaining after commit(n) == remaining before - n"""
        account = make_account(PlanTier.ADVANCED)
        before = remaining(account.id, Channel.TEXT, db_session, MAY)

        commit_usage(account.id, Channel.TEXT, 7, db_session, MAY)

        assert remaining(account.id, Channel.TEXT, db_session, MAY) == before - 7

    def test_commit_on_unlimited_plan_keeps_unlimited(self, db_session, make_account):
        account = make_account(PlanTier.BUSINESS)

        commit_usage(account.id, Channel.CHAT, 500, db_session, MAY)

        assert remaining(account.id, Channel.CHAT, db_session, MAY) == UNLIMITED

    def test_commit_zero_or_negative_is_noop(self, db_session, make_account):
        """count <= 0 is ignored, not an error"""
        account = make_account(PlanTier.BASIC)

        commit_usage(account.id, Channel.CHAT, 0, db_session, MAY)
        commit_usage(account.id, Channel.CHAT, -3, db_session, MAY)

        assert remaining(account.id, Channel.CHAT, db_session, MAY) == 650

    def test_commits_accumulate(self, db_session, make_account):
        """Back-to-back commits from different jobs are all counted"""
        account = make_account(PlanTier.BASIC)

        for _ in range(5):
            commit_usage(account.id, Channel.CHAT, 3, db_session, MAY)

        ledger = get_or_create_ledger(account.id, db_session, MAY)
        db_session.refresh(ledger)
        assert ledger.chat_sent == 15

    def test_commits_from_two_sessions_are_not_lost(self, db_session, make_account):
        """Both dispatchers read the ledger before either commits; both increments land"""
        account = make_account(PlanTier.BASIC)
        get_or_create_ledger(account.id, db_session, MAY)
        first, second = TestSessionLocal(), TestSessionLocal()
        try:
            get_or_create_ledger(account.id, first, MAY)
            second_view = get_or_create_ledger(account.id, second, MAY)

            commit_usage(account.id, Channel.CHAT, 4, first, MAY)
            assert second_view.chat_sent == 0
            commit_usage(account.id, Channel.CHAT, 6, second, MAY)
        finally:
            first.close()
            second.close()

        db_session.expire_all()
        assert get_or_create_ledger(account.id, db_session, MAY).chat_sent == 10
        assert remaining(account.id, Channel.CHAT, db_session, MAY) == 640

    def test_remaining_never_negative(self, db_session, make_account):
        account = make_account(PlanTier.BASIC)
        commit_usage(account.id, Channel.CHAT, 700, db_session, MAY)

        assert remaining(account.id, Channel.CHAT, db_session, MAY) == 0

    def test_new_month_starts_fresh(self, db_session, make_account):
        """Usage is tracked per calendar month"""
        account = make_account(PlanTier.BASIC)
        commit_usage(account.id, Channel.CHAT, 100, db_session, MAY)

        assert remaining(account.id, Channel.CHAT, db_session, MAY) == 550
        assert remaining(account.id, Channel.CHAT, db_session, JUNE) == 650
        assert db_session.query(QuotaLedger).filter(QuotaLedger.account_id == account.id).count() == 2

    def test_missing_account_has_no_quota(self, db_session):
        assert remaining(999, Channel.CHAT, db_session) == 0

    def test_unknown_channel_rejected(self, db_session, make_account):
        account = make_account()
        with pytest.raises(ValueError):
            remaining(account.id, "fax", db_session)
        with pytest.raises(ValueError):
            get_plan_limit(PlanTier.BASIC, Channel.AUTO)


@pytest.mark.high
class TestQuotaBonus:
    """Admin grants on top of the plan limit"""

    def test_bonus_adds_to_remaining(self, db_session, make_account):
        account = make_account(PlanTier.BASIC)

        result = add_bonus(account.id, Channel.TEXT, 20, db_session, MAY)

        assert result == {"ok": True, "remaining": 20}
        assert remaining(account.id, Channel.TEXT, db_session, MAY) == 20

    def test_bonus_must_be_positive(self, db_session, make_account):
        account = make_account(PlanTier.BASIC)
        with pytest.raises(ValueError):
            add_bonus(account.id, Channel.CHAT, 0, db_session)

    def test_bonus_for_missing_account(self, db_session):
        with pytest.raises(ValueError):
            add_bonus(12345, Channel.CHAT, 10, db_session)

    def test_usage_summary(self, db_session, make_account):
        account = make_account(PlanTier.ADVANCED)
        commit_usage(account.id, Channel.CHAT, 50, db_session, MAY)
        add_bonus(account.id, Channel.CHAT, 10, db_session, MAY)

        summary = get_usage_summary(account.id, db_session, MAY)

        assert summary["plan_tier"] == PlanTier.ADVANCED
        assert summary["period_start"].startswith("2026-05-01T00:00:00")
        assert summary["channels"][Channel.CHAT] == {
            "limit": 750, "bonus": 10, "sent": 50, "remaining": 710, "unlimited": False
        }
        assert summary["channels"][Channel.TEXT]["remaining"] == 30

    def test_usage_summary_missing_account(self, db_session):
        assert get_usage_summary(4242, db_session) is None
