# transcription_quota/app/services/ledger_service.py
"""
Consumption ledger.
Charges completed jobs against the subscription pool first and the top-up
pool for the shortfall, and reverses those charges on refund.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from transcription_quota.app.domain.errors import ErrorCode, StorageFailureError
from transcription_quota.app.domain.models import (
    ConsumptionResult,
    RefundResult,
    SubscriptionTier,
)
from transcription_quota.app.infra.db.base import CreditLedgerRepository
from transcription_quota.app.services.billing_period import resolve_billing_period
from transcription_quota.app.services.usage_service import UsageService

logger = logging.getLogger(__name__)


class CreditLedgerService:
    """
    Service recording minute consumption per job.

    The split and the balance checks happen inside the repository's atomic
    ``consume_minutes``; this service only resolves who pays and for which
    period.
    """

    def __init__(self, usage_service: UsageService, ledger: CreditLedgerRepository):
        self._usage = usage_service
        self._ledger = ledger

    def consume(
        self,
        user_id: str,
        job_id: str,
        minutes: int,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConsumptionResult:
        """
        Charge ``minutes`` for a job.

        Args:
            user_id: Job owner
            job_id: Job being charged; a job is charged at most once
            minutes: Billable minutes
            email: Used for the unlimited allowlist
            now: Evaluation time used to resolve the billing period

        Returns:
            ConsumptionResult with the split actually recorded. On rejection
            nothing is recorded and no balance changes.
        """
        now = now or datetime.now(timezone.utc)

        try:
            if self._usage.is_unlimited(user_id, email):
                return ConsumptionResult(success=True, unlimited=True)

            subscription = self._usage.get_subscription(user_id)
            if subscription is not None and subscription.tier == SubscriptionTier.UNLIMITED:
                return ConsumptionResult(success=True, unlimited=True)

            if subscription is None or subscription.tier != SubscriptionTier.PRO:
                logger.warning("Consumption refused, user is not on pro: user=%s, job=%s", user_id, job_id)
                return ConsumptionResult(success=False, error=ErrorCode.NOT_PRO)

            if minutes <= 0:
                return ConsumptionResult(success=True)

            period = resolve_billing_period(subscription, now)
            result = self._ledger.consume_minutes(
                user_id=user_id,
                job_id=job_id,
                minutes=minutes,
                subscription_limit=self._usage.pro_limit_minutes,
                period=period,
            )
        except StorageFailureError as exc:
            logger.error("Failed to consume minutes for job %s: %s", job_id, exc)
            return ConsumptionResult(success=False, error=ErrorCode.STORAGE_FAILURE)

        if result.success:
            logger.info(
                "Minutes consumed: user=%s, job=%s, subscription=%d, topup=%d",
                user_id,
                job_id,
                result.minutes_from_subscription,
                result.minutes_from_topup,
            )
        else:
            logger.info(
                "Consumption rejected: user=%s, job=%s, minutes=%d, reason=%s",
                user_id,
                job_id,
                minutes,
                result.error.value if result.error else None,
            )
        return result

    def refund(self, job_id: str) -> RefundResult:
        """Reverse the recorded consumption of a job. Refunding twice returns 0 minutes."""
        try:
            minutes = self._ledger.refund_minutes(job_id)
        except StorageFailureError as exc:
            logger.error("Failed to refund job %s: %s", job_id, exc)
            return RefundResult(success=False, error=ErrorCode.STORAGE_FAILURE)

        if minutes:
            logger.info("Refunded %d minutes for job %s", minutes, job_id)
        return RefundResult(success=True, minutes_refunded=minutes)
