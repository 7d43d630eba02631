# transcription_quota/app/services/billing_period.py
"""
Billing period resolution.
Pure functions: the same subscription and ``now`` always give the same period.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from transcription_quota.app.domain.models import BillingPeriod, Subscription

BILLING_CYCLE = timedelta(days=30)
UNLIMITED_RESET_LABEL = "Unlimited"


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def resolve_billing_period(subscription: Subscription, now: datetime) -> BillingPeriod:
    """
    Resolve the accounting window that contains ``now``.

    Priority:
    1. Paid tier with provider-anchored dates: returned verbatim.
    2. Signup anchor: fixed 30-day cycles counted from ``user_created_at``.
    3. Otherwise a rolling 30-day window ending at ``now``.
    """
    if (
        subscription.is_paid
        and subscription.current_period_start is not None
        and subscription.current_period_end is not None
    ):
        return BillingPeriod(
            start=subscription.current_period_start,
            end=subscription.current_period_end,
        )

    now = _as_utc(now)

    if subscription.user_created_at is not None:
        signup = _as_utc(subscription.user_created_at)
        cycle_index = (now - signup) // BILLING_CYCLE
        start = signup + cycle_index * BILLING_CYCLE
        return BillingPeriod(start=start, end=start + BILLING_CYCLE)

    return BillingPeriod(start=now - BILLING_CYCLE, end=now)


def format_reset_at(period_end: datetime) -> str:
    return _as_utc(period_end).strftime("%b %d, %Y")
