# transcription_quota/app/routers/v2/transcriptions.py
"""
Transcription routes: start a job, poll it, cancel it, read usage.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from transcription_quota.app.config import settings
from transcription_quota.app.deps import (
    CurrentUser,
    get_current_user,
    get_job_service,
    get_transcription_service,
    get_usage_service,
)
from transcription_quota.app.domain.errors import ErrorCode, StorageFailureError
from transcription_quota.app.domain.models import TranscriptionJob
from transcription_quota.app.services.job_service import JobService
from transcription_quota.app.services.transcription_service import (
    STATUS_REJECTED,
    TranscriptionService,
)
from transcription_quota.app.services.usage_service import UsageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v2/transcriptions", tags=["Transcriptions V2"])

REJECTION_MESSAGES = {
    ErrorCode.NO_SUBSCRIPTION: "AI Transcription requires a Pro subscription",
    ErrorCode.NOT_PRO: "AI Transcription requires a Pro subscription",
    ErrorCode.INSUFFICIENT_CREDITS: "Insufficient transcription minutes",
    ErrorCode.EXISTING_JOB: "A transcription job is already in progress",
}


# =============================================================================
# Request/Response Models
# =============================================================================

class StartTranscriptionRequest(BaseModel):
    """Request to transcribe a YouTube video."""
    youtube_id: str = Field(..., min_length=1, description="YouTube video ID")
    duration_seconds: float = Field(..., gt=0, description="Video duration in seconds")
    video_id: Optional[str] = Field(None, description="Optional linked video record")


class JobResponse(BaseModel):
    """Response with job details."""
    id: str = Field(..., description="Job ID")
    youtube_id: str
    video_id: Optional[str] = None
    status: str = Field(..., description="pending, downloading, transcribing, completed, failed, cancelled")
    progress: int = 0
    current_stage: Optional[str] = None

    duration_seconds: Optional[int] = None
    estimated_cost_cents: Optional[int] = None
    total_chunks: int = 1
    completed_chunks: int = 0

    error_message: Optional[str] = None
    transcript_data: Optional[Any] = Field(None, description="Present once the job is completed")

    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class StartTranscriptionResponse(BaseModel):
    status: str = Field(..., description="completed, existing or pending")
    job_id: Optional[str] = None
    progress: Optional[int] = None
    current_stage: Optional[str] = None
    transcript_data: Optional[Any] = None
    estimated_minutes: Optional[int] = None
    estimated_cost_cents: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    will_use_topup: bool = False


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int
    limit: int
    offset: int


class UsageResponse(BaseModel):
    is_pro_user: bool
    is_unlimited: bool = False
    usage: Optional[dict[str, Any]] = None
    limits: dict[str, int]


# =============================================================================
# Helper Functions
# =============================================================================

def _job_to_response(job: TranscriptionJob) -> JobResponse:
    return JobResponse(
        id=str(job.id),
        youtube_id=job.youtube_id,
        video_id=job.video_id,
        status=job.status.value,
        progress=job.progress,
        current_stage=job.current_stage,
        duration_seconds=job.duration_seconds,
        estimated_cost_cents=job.estimated_cost_cents,
        total_chunks=job.total_chunks,
        completed_chunks=job.completed_chunks,
        error_message=job.error_message,
        transcript_data=job.transcript_data,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


def _storage_unavailable(exc: StorageFailureError) -> HTTPException:
    logger.error("Storage failure: %s", exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Storage temporarily unavailable",
    )


def _limits() -> dict[str, int]:
    return {
        "pro": settings.TRANSCRIPTION_PRO_LIMIT_MINUTES,
        "topup_package": settings.TRANSCRIPTION_TOPUP_PACKAGE_MINUTES,
    }


# =============================================================================
# Routes
# =============================================================================

@router.post("", response_model=StartTranscriptionResponse)
async def start_transcription(
    request: StartTranscriptionRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: TranscriptionService = Depends(get_transcription_service),
):
    """
    Start a transcription, or return the existing job or transcript.

    Poll GET /v2/transcriptions/jobs/{job_id} while the job is pending.
    """
    try:
        result = service.request(
            user_id=current_user.id,
            youtube_id=request.youtube_id,
            duration_seconds=request.duration_seconds,
            video_id=request.video_id,
            email=current_user.email,
        )
    except StorageFailureError as exc:
        raise _storage_unavailable(exc)

    if result.status == STATUS_REJECTED:
        if result.error == ErrorCode.STORAGE_FAILURE:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create transcription job",
            )

        detail: dict[str, Any] = {
            "reason": result.error.value if result.error else None,
            "error": REJECTION_MESSAGES.get(result.error, "Cannot start transcription"),
            "minutes_needed": result.estimated_minutes,
        }
        decision = result.decision
        if decision is not None and decision.stats is not None:
            detail["usage"] = decision.stats.to_dict()
        if result.error == ErrorCode.INSUFFICIENT_CREDITS:
            detail["requires_topup"] = True
        if result.error == ErrorCode.EXISTING_JOB:
            detail["existing_job_id"] = result.job_id

        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

    job = result.job
    return StartTranscriptionResponse(
        status=result.status,
        job_id=result.job_id,
        progress=job.progress if job else None,
        current_stage=job.current_stage if job else None,
        transcript_data=job.transcript_data if job else None,
        estimated_minutes=result.estimated_minutes or None,
        estimated_cost_cents=result.estimated_cost_cents,
        estimated_wait_seconds=result.estimated_wait_seconds,
        will_use_topup=bool(result.decision and result.decision.will_use_topup),
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_transcription_job(
    job_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    jobs: JobService = Depends(get_job_service),
):
    """
    Get a transcription job with its progress, and its transcript once completed.

    Recommended polling interval: 2-5 seconds.
    """
    try:
        job = jobs.get_job(job_id, user_id=current_user.id)
    except StorageFailureError as exc:
        raise _storage_unavailable(exc)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return _job_to_response(job)


@router.get("/jobs", response_model=JobListResponse)
async def list_transcription_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    jobs: JobService = Depends(get_job_service),
):
    """Jobs of the current user, newest first."""
    try:
        found = jobs.list_jobs(current_user.id, limit=limit, offset=offset)
    except StorageFailureError as exc:
        raise _storage_unavailable(exc)

    return JobListResponse(
        jobs=[_job_to_response(job) for job in found],
        total=len(found),
        limit=limit,
        offset=offset,
    )


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_transcription_job(
    job_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    jobs: JobService = Depends(get_job_service),
):
    """
    Cancel a job that has not finished yet.

    Minutes charged for the job, if any, are refunded. A job that already
    completed, failed or was cancelled returns 409.
    """
    result = jobs.cancel_job(job_id, user_id=current_user.id)

    if result.success:
        logger.info("Job cancelled: id=%s, user=%s", job_id, current_user.id)
        return

    if result.error == ErrorCode.JOB_NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if result.error == ErrorCode.ALREADY_TERMINAL:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job already finished")
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Failed to cancel transcription job",
    )


@router.get("/usage", response_model=UsageResponse)
async def get_transcription_usage(
    current_user: CurrentUser = Depends(get_current_user),
    usage_service: UsageService = Depends(get_usage_service),
):
    """Minutes used and remaining in the current billing period."""
    try:
        stats = usage_service.get_usage_stats(current_user.id, email=current_user.email)
    except StorageFailureError as exc:
        raise _storage_unavailable(exc)

    if stats is None:
        return UsageResponse(is_pro_user=False, limits=_limits())

    return UsageResponse(
        is_pro_user=stats.is_unlimited or stats.subscription_minutes.limit > 0,
        is_unlimited=stats.is_unlimited,
        usage=stats.to_dict(),
        limits=_limits(),
    )
