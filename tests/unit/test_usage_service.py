from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from transcription_quota.app.domain.errors import StorageFailureError
from transcription_quota.app.domain.models import BillingPeriod, Subscription, SubscriptionTier
from transcription_quota.app.infra.db.memory_repo import (
    InMemoryCreditLedgerRepository,
    InMemorySubscriptionRepository,
)
from transcription_quota.app.services.access_control import UnlimitedAllowance, split_csv
from transcription_quota.app.services.usage_service import UNLIMITED_MINUTES, UsageService

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 3, 31, tzinfo=timezone.utc)


def pro_subscription(user_id: str = "user-1") -> Subscription:
    return Subscription(
        user_id=user_id,
        tier=SubscriptionTier.PRO,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )


def create_service(
    subscriptions: InMemorySubscriptionRepository,
    ledger: InMemoryCreditLedgerRepository,
    allowance: UnlimitedAllowance | None = None,
) -> UsageService:
    return UsageService(
        subscriptions,
        ledger,
        allowance=allowance or UnlimitedAllowance(user_ids=[], emails=[]),
        pro_limit_minutes=120,
    )


class FailingLedger(InMemoryCreditLedgerRepository):
    def get_used_minutes(self, user_id: str, period: BillingPeriod) -> int:
        raise StorageFailureError("get_used_minutes", "timeout")


class TestUsageStats:
    def test_pro_user_without_consumption(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(pro_subscription())
        service = create_service(subscriptions, InMemoryCreditLedgerRepository())

        stats = service.get_usage_stats("user-1", now=NOW)

        assert stats is not None
        assert stats.subscription_minutes.used == 0
        assert stats.subscription_minutes.limit == 120
        assert stats.subscription_minutes.remaining == 120
        assert stats.topup_minutes == 0
        assert stats.total_remaining == 120
        assert stats.period_start == PERIOD_START
        assert stats.period_end == PERIOD_END
        assert stats.reset_at == "Mar 31, 2026"
        assert stats.is_unlimited is False

    def test_pro_user_with_consumption_and_topup(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(pro_subscription())
        ledger = InMemoryCreditLedgerRepository(clock=lambda: NOW)
        ledger.set_topup_balance("user-1", 30)
        ledger.consume_minutes("user-1", "job-1", 100, 120, BillingPeriod(PERIOD_START, PERIOD_END))
        service = create_service(subscriptions, ledger)

        stats = service.get_usage_stats("user-1", now=NOW)

        assert stats.subscription_minutes.used == 100
        assert stats.subscription_minutes.remaining == 20
        assert stats.topup_minutes == 30
        assert stats.total_remaining == 50

    def test_consumption_outside_period_is_ignored(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(pro_subscription())
        ledger = InMemoryCreditLedgerRepository(clock=lambda: PERIOD_START - timedelta(days=2))
        ledger.consume_minutes(
            "user-1",
            "job-old",
            60,
            120,
            BillingPeriod(PERIOD_START - timedelta(days=30), PERIOD_START),
        )
        service = create_service(subscriptions, ledger)

        stats = service.get_usage_stats("user-1", now=NOW)

        assert stats.subscription_minutes.used == 0

    def test_remaining_never_negative(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(pro_subscription())
        ledger = InMemoryCreditLedgerRepository(clock=lambda: NOW)
        ledger.consume_minutes("user-1", "job-1", 150, 200, BillingPeriod(PERIOD_START, PERIOD_END))
        service = create_service(subscriptions, ledger)

        stats = service.get_usage_stats("user-1", now=NOW)

        assert stats.subscription_minutes.used == 150
        assert stats.subscription_minutes.remaining == 0

    def test_no_subscription_returns_none(self) -> None:
        service = create_service(InMemorySubscriptionRepository(), InMemoryCreditLedgerRepository())

        assert service.get_usage_stats("user-1", now=NOW) is None

    def test_free_tier_has_zero_limit(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(Subscription(user_id="user-1", tier=SubscriptionTier.FREE))
        ledger = InMemoryCreditLedgerRepository()
        ledger.set_topup_balance("user-1", 50)
        service = create_service(subscriptions, ledger)

        stats = service.get_usage_stats("user-1", now=NOW)

        assert stats.subscription_minutes.limit == 0
        assert stats.topup_minutes == 0
        assert stats.total_remaining == 0

    def test_unlimited_tier_returns_sentinel(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(Subscription(user_id="user-1", tier=SubscriptionTier.UNLIMITED))
        service = create_service(subscriptions, FailingLedger())

        stats = service.get_usage_stats("user-1", now=NOW)

        assert stats.is_unlimited is True
        assert stats.total_remaining == UNLIMITED_MINUTES
        assert stats.reset_at == "Unlimited"

    def test_allowlisted_email_skips_storage(self) -> None:
        service = create_service(
            InMemorySubscriptionRepository(),
            FailingLedger(),
            allowance=UnlimitedAllowance(user_ids=[], emails=["Owner@Example.com"]),
        )

        stats = service.get_usage_stats("user-1", email="owner@example.com", now=NOW)

        assert stats.is_unlimited is True
        assert stats.period_start == NOW
        assert stats.period_end == NOW + timedelta(days=30)

    def test_storage_failure_propagates(self) -> None:
        subscriptions = InMemorySubscriptionRepository()
        subscriptions.set_subscription(pro_subscription())
        service = create_service(subscriptions, FailingLedger())

        with pytest.raises(StorageFailureError):
            service.get_usage_stats("user-1", now=NOW)


class TestUnlimitedAllowance:
    def test_matches_user_id(self) -> None:
        allowance = UnlimitedAllowance(user_ids=["user-1"], emails=[])
        assert allowance.is_unlimited("user-1")
        assert not allowance.is_unlimited("user-2")

    def test_email_match_is_case_insensitive(self) -> None:
        allowance = UnlimitedAllowance(user_ids=[], emails=["ADMIN@example.com"])
        assert allowance.is_unlimited("user-9", email="admin@EXAMPLE.com")
        assert not allowance.is_unlimited("user-9")

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UNLIMITED_USER_IDS", "user-1, user-2")
        monkeypatch.setenv("UNLIMITED_USER_EMAILS", "")
        allowance = UnlimitedAllowance()
        assert allowance.is_unlimited("user-2")

    def test_split_csv(self) -> None:
        assert split_csv(" a, b ,,c ") == ["a", "b", "c"]
        assert split_csv(None) == []
