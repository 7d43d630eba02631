from __future__ import annotations

from datetime import datetime, timedelta, timezone

from transcription_quota.app.domain.models import Subscription, SubscriptionTier
from transcription_quota.app.services.billing_period import (
    BILLING_CYCLE,
    format_reset_at,
    resolve_billing_period,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
SIGNUP = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)


def create_subscription(tier: SubscriptionTier = SubscriptionTier.PRO, **kwargs) -> Subscription:
    return Subscription(user_id="user-1", tier=tier, **kwargs)


class TestProviderAnchoredPeriod:
    def test_paid_tier_uses_provider_dates_verbatim(self) -> None:
        start = datetime(2026, 3, 3, 8, 30, tzinfo=timezone.utc)
        end = datetime(2026, 4, 3, 8, 30, tzinfo=timezone.utc)
        subscription = create_subscription(
            current_period_start=start,
            current_period_end=end,
            user_created_at=SIGNUP,
        )

        period = resolve_billing_period(subscription, NOW)

        assert period.start == start
        assert period.end == end

    def test_unlimited_tier_is_paid(self) -> None:
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)
        end = datetime(2026, 4, 1, tzinfo=timezone.utc)
        subscription = create_subscription(
            SubscriptionTier.UNLIMITED,
            current_period_start=start,
            current_period_end=end,
        )

        assert resolve_billing_period(subscription, NOW).start == start

    def test_free_tier_ignores_provider_dates(self) -> None:
        subscription = create_subscription(
            SubscriptionTier.FREE,
            current_period_start=datetime(2026, 3, 3, tzinfo=timezone.utc),
            current_period_end=datetime(2026, 4, 3, tzinfo=timezone.utc),
            user_created_at=SIGNUP,
        )

        period = resolve_billing_period(subscription, NOW)

        assert period.start == SIGNUP + 2 * BILLING_CYCLE

    def test_missing_end_date_falls_back_to_signup(self) -> None:
        subscription = create_subscription(
            current_period_start=datetime(2026, 3, 3, tzinfo=timezone.utc),
            user_created_at=SIGNUP,
        )

        period = resolve_billing_period(subscription, NOW)

        assert period.start == SIGNUP + 2 * BILLING_CYCLE


class TestSignupAnchoredPeriod:
    def test_cycle_contains_now(self) -> None:
        subscription = create_subscription(user_created_at=SIGNUP)

        period = resolve_billing_period(subscription, NOW)

        # Jan 1 + 60 days = Mar 2
        assert period.start == datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert period.end == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert period.contains(NOW)

    def test_exact_boundary_starts_new_cycle(self) -> None:
        subscription = create_subscription(user_created_at=SIGNUP)

        period = resolve_billing_period(subscription, SIGNUP + BILLING_CYCLE)

        assert period.start == SIGNUP + BILLING_CYCLE

    def test_consecutive_cycles_are_gapless(self) -> None:
        subscription = create_subscription(user_created_at=SIGNUP)

        first = resolve_billing_period(subscription, SIGNUP + timedelta(days=10))
        second = resolve_billing_period(subscription, first.end)

        assert second.start == first.end

    def test_naive_datetimes_are_utc(self) -> None:
        subscription = create_subscription(user_created_at=SIGNUP.replace(tzinfo=None))

        period = resolve_billing_period(subscription, NOW.replace(tzinfo=None))

        assert period.start == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_deterministic(self) -> None:
        subscription = create_subscription(user_created_at=SIGNUP)

        assert resolve_billing_period(subscription, NOW) == resolve_billing_period(subscription, NOW)


class TestRollingPeriod:
    def test_no_anchor_uses_rolling_window(self) -> None:
        period = resolve_billing_period(create_subscription(), NOW)

        assert period.start == NOW - BILLING_CYCLE
        assert period.end == NOW


class TestFormatResetAt:
    def test_formats_date(self) -> None:
        assert format_reset_at(datetime(2026, 4, 1, tzinfo=timezone.utc)) == "Apr 01, 2026"
