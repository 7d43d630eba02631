from __future__ import annotations

from datetime import datetime, timezone

from transcription_quota.app.domain.errors import ErrorCode
from transcription_quota.app.domain.models import (
    BillingPeriod,
    JobMetadata,
    Subscription,
    SubscriptionTier,
)
from transcription_quota.app.infra.db.memory_repo import (
    InMemoryCreditLedgerRepository,
    InMemoryJobRepository,
    InMemorySubscriptionRepository,
)
from transcription_quota.app.services.access_control import UnlimitedAllowance
from transcription_quota.app.services.quota_service import DECISION_OK, QuotaService, estimate_minutes
from transcription_quota.app.services.usage_service import UsageService

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD = BillingPeriod(
    start=datetime(2026, 3, 1, tzinfo=timezone.utc),
    end=datetime(2026, 3, 31, tzinfo=timezone.utc),
)


class QuotaFixture:
    def __init__(self, tier: SubscriptionTier | None = SubscriptionTier.PRO) -> None:
        self.subscriptions = InMemorySubscriptionRepository()
        self.ledger = InMemoryCreditLedgerRepository(clock=lambda: NOW)
        self.jobs = InMemoryJobRepository(clock=lambda: NOW)
        self.allowance = UnlimitedAllowance(user_ids=["vip"], emails=["vip@example.com"])
        if tier is not None:
            self.subscriptions.set_subscription(
                Subscription(
                    user_id="user-1",
                    tier=tier,
                    current_period_start=PERIOD.start,
                    current_period_end=PERIOD.end,
                )
            )
        usage = UsageService(self.subscriptions, self.ledger, allowance=self.allowance, pro_limit_minutes=120)
        self.service = QuotaService(usage, self.jobs)

    def use_minutes(self, minutes: int) -> None:
        self.ledger.consume_minutes("user-1", f"job-{minutes}", minutes, 120, PERIOD)


class TestEstimateMinutes:
    def test_rounds_up(self) -> None:
        assert estimate_minutes(61) == 2
        assert estimate_minutes(60) == 1
        assert estimate_minutes(1) == 1


class TestDecide:
    def test_allowlisted_user_admitted_without_subscription(self) -> None:
        fixture = QuotaFixture(tier=None)

        decision = fixture.service.decide("vip", "video-1", 30, now=NOW)

        assert decision.allowed is True
        assert decision.reason == DECISION_OK
        assert decision.unlimited is True

    def test_allowlisted_email(self) -> None:
        fixture = QuotaFixture(tier=None)

        decision = fixture.service.decide("someone", "video-1", 30, email="vip@example.com", now=NOW)

        assert decision.allowed is True

    def test_no_subscription(self) -> None:
        fixture = QuotaFixture(tier=None)

        decision = fixture.service.decide("user-1", "video-1", 30, now=NOW)

        assert decision.allowed is False
        assert decision.reason == ErrorCode.NO_SUBSCRIPTION.value

    def test_free_tier_not_pro(self) -> None:
        fixture = QuotaFixture(tier=SubscriptionTier.FREE)

        decision = fixture.service.decide("user-1", "video-1", 30, now=NOW)

        assert decision.allowed is False
        assert decision.reason == ErrorCode.NOT_PRO.value

    def test_unlimited_tier_admitted(self) -> None:
        fixture = QuotaFixture(tier=SubscriptionTier.UNLIMITED)

        decision = fixture.service.decide("user-1", "video-1", 5000, now=NOW)

        assert decision.allowed is True
        assert decision.unlimited is True

    def test_existing_active_job_rejected_with_id(self) -> None:
        fixture = QuotaFixture()
        job = fixture.jobs.create_job("user-1", "video-1", JobMetadata(duration_seconds=600))

        decision = fixture.service.decide("user-1", "video-1", 10, now=NOW)

        assert decision.allowed is False
        assert decision.reason == ErrorCode.EXISTING_JOB.value
        assert decision.existing_job_id == job.id

    def test_active_job_for_other_video_does_not_block(self) -> None:
        fixture = QuotaFixture()
        fixture.jobs.create_job("user-1", "video-2", JobMetadata())

        decision = fixture.service.decide("user-1", "video-1", 10, now=NOW)

        assert decision.allowed is True

    def test_insufficient_credits_reports_stats(self) -> None:
        fixture = QuotaFixture()
        fixture.use_minutes(100)
        fixture.ledger.set_topup_balance("user-1", 10)

        decision = fixture.service.decide("user-1", "video-1", 45, now=NOW)

        assert decision.allowed is False
        assert decision.reason == ErrorCode.INSUFFICIENT_CREDITS.value
        assert decision.minutes_needed == 45
        assert decision.stats.total_remaining == 30

    def test_admitted_within_subscription(self) -> None:
        fixture = QuotaFixture()
        fixture.ledger.set_topup_balance("user-1", 30)

        decision = fixture.service.decide("user-1", "video-1", 25, now=NOW)

        assert decision.allowed is True
        assert decision.reason == DECISION_OK
        assert decision.will_use_topup is False

    def test_admitted_with_topup_flag(self) -> None:
        fixture = QuotaFixture()
        fixture.use_minutes(100)
        fixture.ledger.set_topup_balance("user-1", 30)

        decision = fixture.service.decide("user-1", "video-1", 25, now=NOW)

        assert decision.allowed is True
        assert decision.will_use_topup is True

    def test_exact_remaining_is_enough(self) -> None:
        fixture = QuotaFixture()
        fixture.use_minutes(100)

        decision = fixture.service.decide("user-1", "video-1", 20, now=NOW)

        assert decision.allowed is True
        assert decision.will_use_topup is False
