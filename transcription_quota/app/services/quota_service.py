# transcription_quota/app/services/quota_service.py
"""
Admission decisions for new transcription jobs.
Advisory only: minutes are charged later by the ledger at completion.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional

from transcription_quota.app.domain.errors import ErrorCode
from transcription_quota.app.domain.models import (
    ACTIVE_JOB_STATUSES,
    SubscriptionTier,
    TranscriptionDecision,
)
from transcription_quota.app.infra.db.base import JobRepository
from transcription_quota.app.services.usage_service import UsageService

logger = logging.getLogger(__name__)

DECISION_OK = "OK"


def estimate_minutes(duration_seconds: float) -> int:
    """Billable minutes for a duration, rounded up to the next minute."""
    return math.ceil(duration_seconds / 60)


class QuotaService:
    """
    Service deciding whether a user may start a transcription.

    Checks run cheapest and most authoritative first and stop at the first
    rejection.
    """

    def __init__(self, usage_service: UsageService, jobs: JobRepository):
        self._usage = usage_service
        self._jobs = jobs

    def decide(
        self,
        user_id: str,
        youtube_id: str,
        estimated_minutes: int,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TranscriptionDecision:
        """
        Evaluate a start request.

        Args:
            user_id: Requesting user
            youtube_id: Video to transcribe
            estimated_minutes: Billable minutes quoted for the video
            email: Used for the unlimited allowlist
            now: Evaluation time

        Returns:
            TranscriptionDecision; rejections carry enough detail for the
            caller to offer a top-up

        Raises:
            StorageFailureError: Storage unreachable
        """
        if self._usage.is_unlimited(user_id, email):
            return TranscriptionDecision(
                allowed=True,
                reason=DECISION_OK,
                unlimited=True,
                minutes_needed=estimated_minutes,
            )

        subscription = self._usage.get_subscription(user_id)

        if subscription is None:
            return TranscriptionDecision(allowed=False, reason=ErrorCode.NO_SUBSCRIPTION.value)

        if subscription.tier == SubscriptionTier.UNLIMITED:
            return TranscriptionDecision(
                allowed=True,
                reason=DECISION_OK,
                subscription=subscription,
                unlimited=True,
                minutes_needed=estimated_minutes,
            )

        if subscription.tier != SubscriptionTier.PRO:
            return TranscriptionDecision(
                allowed=False,
                reason=ErrorCode.NOT_PRO.value,
                subscription=subscription,
            )

        existing_job = self._jobs.find_latest_job(
            youtube_id=youtube_id,
            statuses=ACTIVE_JOB_STATUSES,
            user_id=user_id,
        )
        if existing_job is not None:
            return TranscriptionDecision(
                allowed=False,
                reason=ErrorCode.EXISTING_JOB.value,
                existing_job_id=existing_job.id,
                subscription=subscription,
            )

        stats = self._usage.get_usage_stats(user_id, email=email, now=now, subscription=subscription)

        if stats is None:
            return TranscriptionDecision(
                allowed=False,
                reason=ErrorCode.NO_SUBSCRIPTION.value,
                subscription=subscription,
            )

        if stats.total_remaining < estimated_minutes:
            logger.info(
                "Transcription rejected for insufficient credits: user=%s, needed=%d, remaining=%d",
                user_id,
                estimated_minutes,
                stats.total_remaining,
            )
            return TranscriptionDecision(
                allowed=False,
                reason=ErrorCode.INSUFFICIENT_CREDITS.value,
                stats=stats,
                subscription=subscription,
                minutes_needed=estimated_minutes,
            )

        will_use_topup = (
            stats.subscription_minutes.remaining < estimated_minutes
            and stats.topup_minutes > 0
        )

        return TranscriptionDecision(
            allowed=True,
            reason=DECISION_OK,
            stats=stats,
            subscription=subscription,
            will_use_topup=will_use_topup,
            minutes_needed=estimated_minutes,
        )
