# transcription_quota/app/services/usage_service.py
"""
Usage aggregation.
Combines the resolved billing period, subscription-pool consumption and the
top-up balance into UsageStats.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from transcription_quota.app.domain.models import (
    Subscription,
    SubscriptionMinutes,
    SubscriptionTier,
    UsageStats,
)
from transcription_quota.app.infra.db.base import CreditLedgerRepository, SubscriptionRepository
from transcription_quota.app.services.access_control import UnlimitedAllowance
from transcription_quota.app.services.billing_period import (
    BILLING_CYCLE,
    UNLIMITED_RESET_LABEL,
    format_reset_at,
    resolve_billing_period,
)

logger = logging.getLogger(__name__)

# Minutes included with Pro per billing period
PRO_LIMIT_MINUTES = int(os.getenv("TRANSCRIPTION_PRO_LIMIT_MINUTES", "120"))

# Large finite value keeps unlimited stats JSON-serializable
UNLIMITED_MINUTES = 999999


def unlimited_usage_stats(now: datetime) -> UsageStats:
    return UsageStats(
        subscription_minutes=SubscriptionMinutes(
            used=0,
            limit=UNLIMITED_MINUTES,
            remaining=UNLIMITED_MINUTES,
        ),
        topup_minutes=0,
        total_remaining=UNLIMITED_MINUTES,
        period_start=now,
        period_end=now + BILLING_CYCLE,
        reset_at=UNLIMITED_RESET_LABEL,
        is_unlimited=True,
    )


class UsageService:
    """
    Service for reading a user's transcription credit position.

    Reads always go to the ledger repository so that consumption recorded
    by concurrent jobs is reflected.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        ledger: CreditLedgerRepository,
        allowance: Optional[UnlimitedAllowance] = None,
        pro_limit_minutes: int = PRO_LIMIT_MINUTES,
    ):
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._allowance = allowance or UnlimitedAllowance()
        self.pro_limit_minutes = pro_limit_minutes

    def is_unlimited(
        self,
        user_id: str,
        email: Optional[str] = None,
        subscription: Optional[Subscription] = None,
    ) -> bool:
        if self._allowance.is_unlimited(user_id, email):
            return True
        return subscription is not None and subscription.tier == SubscriptionTier.UNLIMITED

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return self._subscriptions.get_subscription(user_id)

    def get_usage_stats(
        self,
        user_id: str,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
        subscription: Optional[Subscription] = None,
    ) -> Optional[UsageStats]:
        """
        Get usage statistics for the current billing period.

        Args:
            user_id: The user
            email: Used for the unlimited allowlist
            now: Evaluation time (defaults to current UTC time)
            subscription: Already-loaded subscription, to avoid a second read

        Returns:
            UsageStats, or None when the user has no resolvable subscription

        Raises:
            StorageFailureError: Storage unreachable
        """
        now = now or datetime.now(timezone.utc)

        if self._allowance.is_unlimited(user_id, email):
            return unlimited_usage_stats(now)

        subscription = subscription or self._subscriptions.get_subscription(user_id)
        if subscription is None:
            return None

        if subscription.tier == SubscriptionTier.UNLIMITED:
            return unlimited_usage_stats(now)

        period = resolve_billing_period(subscription, now)

        if subscription.tier != SubscriptionTier.PRO:
            return UsageStats(
                subscription_minutes=SubscriptionMinutes(used=0, limit=0, remaining=0),
                topup_minutes=0,
                total_remaining=0,
                period_start=period.start,
                period_end=period.end,
                reset_at=format_reset_at(period.end),
            )

        used = self._ledger.get_used_minutes(user_id, period)
        remaining = max(0, self.pro_limit_minutes - used)
        topup = self._ledger.get_topup_balance(user_id)

        logger.debug(
            "Usage stats: user=%s, used=%d/%d, topup=%d",
            user_id,
            used,
            self.pro_limit_minutes,
            topup,
        )

        return UsageStats(
            subscription_minutes=SubscriptionMinutes(
                used=used,
                limit=self.pro_limit_minutes,
                remaining=remaining,
            ),
            topup_minutes=topup,
            total_remaining=remaining + topup,
            period_start=period.start,
            period_end=period.end,
            reset_at=format_reset_at(period.end),
        )
