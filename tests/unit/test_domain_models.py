from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from transcription_quota.app.domain.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    UNSET,
    BillingPeriod,
    CreditLedgerEntry,
    JobStatus,
    JobUpdate,
    Subscription,
    SubscriptionMinutes,
    SubscriptionTier,
    TranscriptionJob,
    UsageStats,
    can_transition,
    split_consumption,
    statuses_leading_to,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestJobStatus:
    def test_job_status_values(self) -> None:
        assert JobStatus.PENDING.value == "pending"
        assert JobStatus.DOWNLOADING.value == "downloading"
        assert JobStatus.TRANSCRIBING.value == "transcribing"
        assert JobStatus.COMPLETED.value == "completed"
        assert JobStatus.FAILED.value == "failed"
        assert JobStatus.CANCELLED.value == "cancelled"

    def test_job_status_is_string_enum(self) -> None:
        assert isinstance(JobStatus.PENDING, str)
        assert JobStatus.PENDING == "pending"

    def test_active_and_terminal_partition_all_statuses(self) -> None:
        assert ACTIVE_JOB_STATUSES | TERMINAL_JOB_STATUSES == set(JobStatus)
        assert not ACTIVE_JOB_STATUSES & TERMINAL_JOB_STATUSES


class TestTransitions:
    def test_forward_path(self) -> None:
        assert can_transition(JobStatus.PENDING, JobStatus.DOWNLOADING)
        assert can_transition(JobStatus.DOWNLOADING, JobStatus.TRANSCRIBING)
        assert can_transition(JobStatus.TRANSCRIBING, JobStatus.COMPLETED)

    def test_cannot_skip_stages(self) -> None:
        assert not can_transition(JobStatus.PENDING, JobStatus.TRANSCRIBING)
        assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
        assert not can_transition(JobStatus.DOWNLOADING, JobStatus.COMPLETED)

    def test_cannot_go_backwards(self) -> None:
        assert not can_transition(JobStatus.TRANSCRIBING, JobStatus.DOWNLOADING)
        assert not can_transition(JobStatus.DOWNLOADING, JobStatus.PENDING)

    @pytest.mark.parametrize("status", sorted(ACTIVE_JOB_STATUSES))
    def test_failed_and_cancelled_reachable_from_active(self, status: JobStatus) -> None:
        assert can_transition(status, JobStatus.FAILED)
        assert can_transition(status, JobStatus.CANCELLED)
        assert can_transition(status, status)

    @pytest.mark.parametrize("status", sorted(TERMINAL_JOB_STATUSES))
    def test_terminal_statuses_have_no_exit(self, status: JobStatus) -> None:
        assert not any(can_transition(status, target) for target in JobStatus)

    def test_statuses_leading_to_transcribing(self) -> None:
        assert statuses_leading_to(JobStatus.TRANSCRIBING) == [
            JobStatus.DOWNLOADING,
            JobStatus.TRANSCRIBING,
        ]

    def test_statuses_leading_to_cancelled(self) -> None:
        assert set(statuses_leading_to(JobStatus.CANCELLED)) == ACTIVE_JOB_STATUSES


class TestTranscriptionJob:
    def test_create_job_minimal(self) -> None:
        job = TranscriptionJob(id="job-1", user_id="user-1", youtube_id="abc", status=JobStatus.PENDING)

        assert job.progress == 0
        assert job.total_chunks == 1
        assert job.completed_chunks == 0
        assert job.transcript_data is None
        assert job.is_active
        assert not job.is_terminal

    def test_terminal_job(self) -> None:
        job = TranscriptionJob(id="job-1", user_id="user-1", youtube_id="abc", status=JobStatus.CANCELLED)
        assert job.is_terminal
        assert not job.is_active


class TestJobUpdate:
    def test_default_update_is_empty(self) -> None:
        update = JobUpdate()
        assert update.is_empty
        assert update.to_changes() == {}
        assert update.status is UNSET

    def test_only_set_fields_are_emitted(self) -> None:
        update = JobUpdate(progress=40, completed_chunks=2)
        assert update.to_changes() == {"progress": 40, "completed_chunks": 2}

    def test_none_means_clear(self) -> None:
        update = JobUpdate(current_stage=None)
        assert not update.is_empty
        assert update.to_changes() == {"current_stage": None}

    def test_unset_is_falsy_singleton(self) -> None:
        assert not UNSET
        assert repr(UNSET) == "UNSET"
        assert JobUpdate().progress is JobUpdate().current_stage


class TestBillingPeriod:
    def test_contains_is_half_open(self) -> None:
        period = BillingPeriod(start=NOW, end=NOW + timedelta(days=30))

        assert period.contains(NOW)
        assert period.contains(NOW + timedelta(days=29, hours=23))
        assert not period.contains(NOW + timedelta(days=30))
        assert not period.contains(NOW - timedelta(seconds=1))


class TestSubscription:
    def test_paid_tiers(self) -> None:
        assert Subscription(user_id="u", tier=SubscriptionTier.PRO).is_paid
        assert Subscription(user_id="u", tier=SubscriptionTier.UNLIMITED).is_paid
        assert not Subscription(user_id="u", tier=SubscriptionTier.FREE).is_paid


class TestUsageStats:
    def test_to_dict_uses_camel_case(self) -> None:
        stats = UsageStats(
            subscription_minutes=SubscriptionMinutes(used=100, limit=120, remaining=20),
            topup_minutes=30,
            total_remaining=50,
            period_start=NOW,
            period_end=NOW + timedelta(days=30),
            reset_at="Apr 14, 2026",
        )

        payload = stats.to_dict()

        assert payload["subscriptionMinutes"] == {"used": 100, "limit": 120, "remaining": 20}
        assert payload["topupMinutes"] == 30
        assert payload["totalRemaining"] == 50
        assert payload["periodStart"] == NOW.isoformat()
        assert payload["resetAt"] == "Apr 14, 2026"
        assert payload["isUnlimited"] is False


class TestCreditLedgerEntry:
    def test_totals_and_refund_flag(self) -> None:
        entry = CreditLedgerEntry(
            job_id="job-1",
            user_id="user-1",
            minutes_from_subscription=20,
            minutes_from_topup=5,
            consumed_at=NOW,
        )
        assert entry.total_minutes == 25
        assert not entry.is_refunded

        entry.refunded_at = NOW
        assert entry.is_refunded


class TestSplitConsumption:
    def test_subscription_covers_everything(self) -> None:
        assert split_consumption(25, subscription_limit=120, used_minutes=0) == (25, 0)

    def test_shortfall_goes_to_topup(self) -> None:
        assert split_consumption(25, subscription_limit=120, used_minutes=100) == (20, 5)

    def test_exhausted_subscription(self) -> None:
        assert split_consumption(10, subscription_limit=120, used_minutes=130) == (0, 10)
