# transcription_quota/app/services/job_service.py
"""
Job lifecycle controller.

Every status change is a conditional update ("only if the current status is
one of ...") so a cancel or fail can never overwrite a completed job, and a
finished job is finalized exactly once. Minutes are charged at completion
and refunded when a job ends any other way.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from transcription_quota.app.domain.errors import (
    ActiveJobExistsError,
    ErrorCode,
    StorageFailureError,
)
from transcription_quota.app.domain.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ConsumptionResult,
    JobMetadata,
    JobOperationResult,
    JobStatus,
    JobUpdate,
    TranscriptionDecision,
    TranscriptionJob,
    can_transition,
    statuses_leading_to,
)
from transcription_quota.app.infra.db.base import JobRepository
from transcription_quota.app.services.ledger_service import CreditLedgerService
from transcription_quota.app.services.quota_service import estimate_minutes

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"

# Attempts before giving up on a claim contended by other workers
MAX_CLAIM_ATTEMPTS = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobService:
    """
    Service owning the transcription job state machine.

    pending -> downloading -> transcribing -> completed, with failed and
    cancelled reachable from any non-terminal status.
    """

    def __init__(
        self,
        jobs: JobRepository,
        ledger_service: CreditLedgerService,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._jobs = jobs
        self._ledger = ledger_service
        self._clock = clock

    # =========================================================================
    # Creation
    # =========================================================================

    def create_job(
        self,
        user_id: str,
        youtube_id: str,
        metadata: JobMetadata,
        decision: TranscriptionDecision,
    ) -> JobOperationResult:
        """
        Create a PENDING job for an admitted request.

        Args:
            user_id: Owner
            youtube_id: Video to transcribe
            metadata: Creation-time attributes
            decision: Admission decision; must be allowed

        Returns:
            JobOperationResult with the new job, or EXISTING_JOB carrying the
            id of the job that won a concurrent creation
        """
        if not decision.allowed:
            return JobOperationResult(success=False, error=ErrorCode.NOT_ADMITTED)
        if decision.unlimited:
            metadata = replace(metadata, unlimited=True)

        try:
            job = self._jobs.create_job(user_id, youtube_id, metadata)
        except ActiveJobExistsError:
            winner = self._find_active(user_id, youtube_id)
            logger.info(
                "Job creation lost to an active job: user=%s, video=%s, existing=%s",
                user_id,
                youtube_id,
                winner.id if winner else None,
            )
            return JobOperationResult(
                success=False,
                error=ErrorCode.EXISTING_JOB,
                job_id=winner.id if winner else None,
                job=winner,
            )
        except StorageFailureError as exc:
            logger.error("Failed to create job for video %s: %s", youtube_id, exc)
            return JobOperationResult(success=False, error=ErrorCode.STORAGE_FAILURE)

        logger.info("Job created: id=%s, user=%s, video=%s", job.id, user_id, youtube_id)
        return JobOperationResult(success=True, job_id=job.id, job=job)

    def _find_active(self, user_id: str, youtube_id: str) -> Optional[TranscriptionJob]:
        try:
            return self._jobs.find_latest_job(youtube_id, ACTIVE_JOB_STATUSES, user_id=user_id)
        except StorageFailureError as exc:
            logger.error("Failed to look up active job for video %s: %s", youtube_id, exc)
            return None

    # =========================================================================
    # Progress
    # =========================================================================

    def advance_job(self, job_id: str, update: JobUpdate) -> JobOperationResult:
        """
        Apply a sparse progress patch.

        Only the fields set on ``update`` are written. Terminal statuses are
        reached through complete_job, fail_job and cancel_job instead.

        Raises:
            ValueError: progress outside 0..100
        """
        changes: dict[str, Any] = update.to_changes()
        target: Optional[JobStatus] = None

        if update.is_set("status"):
            target = JobStatus(update.status)
            if target in TERMINAL_JOB_STATUSES:
                return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.INVALID_TRANSITION)
            changes["status"] = target

        progress: Optional[int] = None
        if update.is_set("progress"):
            progress = update.progress
            if progress is None or not 0 <= progress <= 100:
                raise ValueError(f"progress must be between 0 and 100, got {progress!r}")

        expected = statuses_leading_to(target) if target else sorted(ACTIVE_JOB_STATUSES)

        try:
            if not changes:
                job = self._jobs.get_job_by_id(job_id)
                if job is None:
                    return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.JOB_NOT_FOUND)
                return JobOperationResult(success=True, job_id=job_id, job=job)

            job = self._jobs.update_job_if(job_id, expected, changes, max_current_progress=progress)
            if job is not None:
                return JobOperationResult(success=True, job_id=job_id, job=job)

            error = self._diagnose_advance(job_id, target, progress)
        except StorageFailureError as exc:
            logger.error("Failed to advance job %s: %s", job_id, exc)
            return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.STORAGE_FAILURE)

        logger.info("Job update rejected: id=%s, reason=%s", job_id, error.value)
        return JobOperationResult(success=False, job_id=job_id, error=error)

    def _diagnose_advance(
        self,
        job_id: str,
        target: Optional[JobStatus],
        progress: Optional[int],
    ) -> ErrorCode:
        current = self._jobs.get_job_by_id(job_id)
        if current is None:
            return ErrorCode.JOB_NOT_FOUND
        if current.is_terminal:
            return ErrorCode.ALREADY_TERMINAL
        if target is not None and not can_transition(current.status, target):
            return ErrorCode.INVALID_TRANSITION
        if progress is not None and current.progress > progress:
            return ErrorCode.PROGRESS_REGRESSION
        # The row changed between the update and the re-read
        return ErrorCode.INVALID_TRANSITION

    def _diagnose_finalize(self, job_id: str) -> ErrorCode:
        current = self._jobs.get_job_by_id(job_id)
        if current is None:
            return ErrorCode.JOB_NOT_FOUND
        if current.is_terminal:
            return ErrorCode.ALREADY_TERMINAL
        return ErrorCode.INVALID_TRANSITION

    # =========================================================================
    # Finalization
    # =========================================================================

    def complete_job(
        self,
        job_id: str,
        transcript_data: Any,
        measured_duration_seconds: Optional[float] = None,
        email: Optional[str] = None,
    ) -> JobOperationResult:
        """
        Charge the job and mark it COMPLETED.

        Minutes are consumed before the status changes. If the ledger
        rejects the charge the job fails with the ledger's reason; if the
        job was finalized elsewhere in the meantime the charge is refunded.

        Args:
            job_id: Job in TRANSCRIBING status
            transcript_data: Payload attached to the completed job
            measured_duration_seconds: Actual audio length, when known.
                Falls back to the duration quoted at creation.
            email: Owner email, for the unlimited allowlist. Jobs admitted
                as unlimited are never charged, with or without it.

        Returns:
            JobOperationResult with the completed job and the consumption
        """
        try:
            job = self._jobs.get_job_by_id(job_id)
        except StorageFailureError as exc:
            logger.error("Failed to load job %s for completion: %s", job_id, exc)
            return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.STORAGE_FAILURE)

        if job is None:
            return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.JOB_NOT_FOUND)
        if job.is_terminal:
            return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.ALREADY_TERMINAL, job=job)
        if job.status != JobStatus.TRANSCRIBING:
            return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.INVALID_TRANSITION, job=job)

        duration = measured_duration_seconds
        if duration is None:
            duration = job.duration_seconds or 0
        minutes = estimate_minutes(duration)

        if job.unlimited:
            consumption = ConsumptionResult(success=True, unlimited=True)
        else:
            consumption = self._ledger.consume(job.user_id, job.id, minutes, email=email)
        if not consumption.success:
            if consumption.error == ErrorCode.STORAGE_FAILURE:
                return JobOperationResult(
                    success=False,
                    job_id=job_id,
                    error=ErrorCode.STORAGE_FAILURE,
                    consumption=consumption,
                )
            if consumption.error == ErrorCode.ALREADY_REFUNDED:
                return JobOperationResult(
                    success=False,
                    job_id=job_id,
                    error=ErrorCode.ALREADY_TERMINAL,
                    consumption=consumption,
                )

            reason = consumption.error or ErrorCode.INSUFFICIENT_CREDITS
            logger.warning("Completion charge rejected: job=%s, minutes=%d, reason=%s", job_id, minutes, reason.value)
            failed = self.fail_job(job_id, reason.value)
            return JobOperationResult(
                success=False,
                job_id=job_id,
                error=reason,
                job=failed.job,
                consumption=consumption,
            )

        changes = {
            "status": JobStatus.COMPLETED,
            "progress": 100,
            "transcript_data": transcript_data,
            "completed_at": self._clock(),
        }
        try:
            completed = self._jobs.update_job_if(job_id, [JobStatus.TRANSCRIBING], changes)
            error = None if completed else self._diagnose_finalize(job_id)
        except StorageFailureError as exc:
            # Left in TRANSCRIBING; the recorded charge is reused on retry
            logger.error("Failed to mark job %s completed: %s", job_id, exc)
            return JobOperationResult(
                success=False,
                job_id=job_id,
                error=ErrorCode.STORAGE_FAILURE,
                consumption=consumption,
            )

        if completed is None:
            refund = self._ledger.refund(job_id)
            logger.info(
                "Completion lost to another finalization: job=%s, refunded=%d",
                job_id,
                refund.minutes_refunded,
            )
            return JobOperationResult(
                success=False,
                job_id=job_id,
                error=error,
                consumption=consumption,
                minutes_refunded=refund.minutes_refunded,
            )

        logger.info("Job completed: id=%s, minutes=%d", job_id, minutes)
        return JobOperationResult(success=True, job_id=job_id, job=completed, consumption=consumption)

    def fail_job(self, job_id: str, error_message: str) -> JobOperationResult:
        """Mark a non-terminal job FAILED and refund anything charged for it."""
        return self._finalize(
            job_id,
            JobStatus.FAILED,
            {"status": JobStatus.FAILED, "error_message": error_message},
        )

    def cancel_job(self, job_id: str, user_id: Optional[str] = None) -> JobOperationResult:
        """
        Cancel a non-terminal job.

        Cancellation is cooperative: the worker notices it on its next
        progress update. A job that already reached a terminal status is
        left untouched and reported as ALREADY_TERMINAL.

        Args:
            job_id: The job
            user_id: If provided, the job must belong to this user
        """
        if user_id is not None:
            try:
                owned = self._jobs.get_job_by_id(job_id, user_id=user_id)
            except StorageFailureError as exc:
                logger.error("Failed to load job %s for cancellation: %s", job_id, exc)
                return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.STORAGE_FAILURE)
            if owned is None:
                return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.JOB_NOT_FOUND)

        return self._finalize(
            job_id,
            JobStatus.CANCELLED,
            {"status": JobStatus.CANCELLED, "error_message": CANCELLED_BY_USER},
        )

    def _finalize(self, job_id: str, status: JobStatus, changes: dict[str, Any]) -> JobOperationResult:
        try:
            job = self._jobs.update_job_if(job_id, sorted(ACTIVE_JOB_STATUSES), changes)
            error = None if job else self._diagnose_finalize(job_id)
        except StorageFailureError as exc:
            logger.error("Failed to mark job %s %s: %s", job_id, status.value, exc)
            return JobOperationResult(success=False, job_id=job_id, error=ErrorCode.STORAGE_FAILURE)

        if job is None:
            logger.info("Job %s not moved to %s: %s", job_id, status.value, error.value)
            return JobOperationResult(success=False, job_id=job_id, error=error)

        refund = self._ledger.refund(job_id)
        if not refund.success:
            logger.error("Job %s is %s but its refund did not go through", job_id, status.value)

        logger.info("Job %s: id=%s, refunded=%d", status.value, job_id, refund.minutes_refunded)
        return JobOperationResult(
            success=True,
            job_id=job_id,
            job=job,
            minutes_refunded=refund.minutes_refunded,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> Optional[TranscriptionJob]:
        return self._jobs.get_job_by_id(job_id, user_id=user_id)

    def get_active_job(self, user_id: str, youtube_id: str) -> Optional[TranscriptionJob]:
        """Most recently created non-terminal job for (user, video)."""
        return self._jobs.find_latest_job(youtube_id, ACTIVE_JOB_STATUSES, user_id=user_id)

    def get_completed_job(self, youtube_id: str) -> Optional[TranscriptionJob]:
        """Most recently completed job for the video, from any user."""
        return self._jobs.find_latest_job(youtube_id, [JobStatus.COMPLETED], order_by="completed_at")

    def list_jobs(self, user_id: str, limit: int = 20, offset: int = 0) -> list[TranscriptionJob]:
        return self._jobs.get_jobs_by_user(user_id, limit=limit, offset=offset)

    # =========================================================================
    # Worker support
    # =========================================================================

    def claim_next_job(self) -> Optional[TranscriptionJob]:
        """
        Move the oldest PENDING job to DOWNLOADING and return it.

        Returns:
            The claimed job, or None if nothing is pending
        """
        for _ in range(MAX_CLAIM_ATTEMPTS):
            job_id = self._jobs.find_oldest_job_id(JobStatus.PENDING)
            if job_id is None:
                return None

            claimed = self._jobs.update_job_if(
                job_id,
                [JobStatus.PENDING],
                {
                    "status": JobStatus.DOWNLOADING,
                    "current_stage": JobStatus.DOWNLOADING.value,
                    "started_at": self._clock(),
                },
            )
            if claimed is not None:
                logger.info("Job claimed: id=%s, video=%s", claimed.id, claimed.youtube_id)
                return claimed

            logger.debug("Job %s was claimed by another worker", job_id)

        return None

    def expire_stale_jobs(self, max_age_minutes: int) -> list[str]:
        """
        Fail claimed jobs (downloading or transcribing) with no update for
        ``max_age_minutes``. Pending jobs only wait in the queue and are kept.

        Returns:
            IDs of the jobs that were failed
        """
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        try:
            stale_ids = self._jobs.find_stale_job_ids(cutoff)
        except StorageFailureError as exc:
            logger.error("Failed to look up stale jobs: %s", exc)
            return []

        expired = []
        for job_id in stale_ids:
            result = self.fail_job(job_id, f"Timed out after {max_age_minutes} minutes without progress")
            if result.success:
                expired.append(job_id)

        if expired:
            logger.warning("Expired %d stale jobs", len(expired))
        return expired
