# transcription_quota/app/services/transcription_service.py
"""
Entry point for a user's "transcribe this video" request.
Chains the cached-result lookup, the active-job lookup, the admission
decision and job creation.
"""
from __future__ import annotations

import logging
import math
import os
from typing import Optional

from transcription_quota.app.domain.errors import ErrorCode
from transcription_quota.app.domain.models import JobMetadata, StartTranscriptionResult
from transcription_quota.app.services.job_service import JobService
from transcription_quota.app.services.quota_service import QuotaService, estimate_minutes

logger = logging.getLogger(__name__)

COST_CENTS_PER_MINUTE = float(os.getenv("TRANSCRIPTION_COST_CENTS_PER_MINUTE", "1.0"))

# Rough wall-clock processing time per second of audio, plus queue overhead
PROCESSING_SECONDS_PER_AUDIO_SECOND = float(os.getenv("TRANSCRIPTION_PROCESSING_RATIO", "0.25"))
PROCESSING_OVERHEAD_SECONDS = 30

STATUS_COMPLETED = "completed"
STATUS_EXISTING = "existing"
STATUS_PENDING = "pending"
STATUS_REJECTED = "rejected"


def estimate_cost_cents(duration_seconds: float, cents_per_minute: float = COST_CENTS_PER_MINUTE) -> int:
    return round(duration_seconds / 60 * cents_per_minute)


def estimate_wait_seconds(duration_seconds: float) -> int:
    return math.ceil(duration_seconds * PROCESSING_SECONDS_PER_AUDIO_SECOND) + PROCESSING_OVERHEAD_SECONDS


class TranscriptionService:
    def __init__(
        self,
        quota_service: QuotaService,
        job_service: JobService,
        cents_per_minute: float = COST_CENTS_PER_MINUTE,
    ):
        self._quota = quota_service
        self._jobs = job_service
        self._cents_per_minute = cents_per_minute

    def request(
        self,
        user_id: str,
        youtube_id: str,
        duration_seconds: float,
        video_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> StartTranscriptionResult:
        """
        Start, reuse or refuse a transcription for a video.

        Args:
            user_id: Requesting user
            youtube_id: Video to transcribe
            duration_seconds: Video length reported by the client
            video_id: Optional linked video record
            email: Used for the unlimited allowlist

        Returns:
            StartTranscriptionResult with status ``completed`` (a transcript
            already exists), ``existing`` (the user already has an active
            job), ``rejected`` (see ``decision``) or ``pending`` (new job)

        Raises:
            ValueError: Non-positive duration
            StorageFailureError: Storage unreachable during the lookups
        """
        if not duration_seconds or duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")

        normalized_seconds = math.ceil(duration_seconds)

        completed = self._jobs.get_completed_job(youtube_id)
        if completed is not None and completed.transcript_data is not None:
            logger.info("Reusing completed transcript: video=%s, job=%s", youtube_id, completed.id)
            return StartTranscriptionResult(status=STATUS_COMPLETED, job_id=completed.id, job=completed)

        active = self._jobs.get_active_job(user_id, youtube_id)
        if active is not None:
            return StartTranscriptionResult(
                status=STATUS_EXISTING,
                job_id=active.id,
                job=active,
                estimated_wait_seconds=estimate_wait_seconds(normalized_seconds),
            )

        minutes = estimate_minutes(normalized_seconds)
        decision = self._quota.decide(user_id, youtube_id, minutes, email=email)

        if not decision.allowed:
            return StartTranscriptionResult(
                status=STATUS_REJECTED,
                job_id=decision.existing_job_id,
                decision=decision,
                estimated_minutes=minutes,
                error=ErrorCode(decision.reason),
            )

        cost_cents = estimate_cost_cents(normalized_seconds, self._cents_per_minute)
        created = self._jobs.create_job(
            user_id,
            youtube_id,
            JobMetadata(
                video_id=video_id,
                duration_seconds=normalized_seconds,
                estimated_cost_cents=cost_cents,
            ),
            decision,
        )

        if created.error == ErrorCode.EXISTING_JOB and created.job is not None:
            return StartTranscriptionResult(
                status=STATUS_EXISTING,
                job_id=created.job_id,
                job=created.job,
                estimated_wait_seconds=estimate_wait_seconds(normalized_seconds),
            )

        if not created.success:
            return StartTranscriptionResult(
                status=STATUS_REJECTED,
                job_id=created.job_id,
                decision=decision,
                estimated_minutes=minutes,
                error=created.error,
            )

        return StartTranscriptionResult(
            status=STATUS_PENDING,
            job_id=created.job_id,
            job=created.job,
            decision=decision,
            estimated_minutes=minutes,
            estimated_cost_cents=cost_cents,
            estimated_wait_seconds=estimate_wait_seconds(normalized_seconds),
        )
