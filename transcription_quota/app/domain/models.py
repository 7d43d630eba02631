# transcription_quota/app/domain/models.py
"""
Domain models for transcription credit metering and the job lifecycle.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from transcription_quota.app.domain.errors import ErrorCode


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    UNLIMITED = "unlimited"


PAID_TIERS = frozenset({SubscriptionTier.PRO, SubscriptionTier.UNLIMITED})


class JobStatus(str, Enum):
    """Status enum for transcription jobs."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.DOWNLOADING, JobStatus.TRANSCRIBING})
# Claimed by a worker; pending jobs are only waiting in the queue
IN_FLIGHT_JOB_STATUSES = frozenset({JobStatus.DOWNLOADING, JobStatus.TRANSCRIBING})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Self-transitions on active statuses carry progress updates.
JOB_STATUS_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.PENDING, JobStatus.DOWNLOADING, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.DOWNLOADING: frozenset({
        JobStatus.DOWNLOADING, JobStatus.TRANSCRIBING, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.TRANSCRIBING: frozenset({
        JobStatus.TRANSCRIBING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in JOB_STATUS_TRANSITIONS[from_status]


def statuses_leading_to(to_status: JobStatus) -> list[JobStatus]:
    """Statuses from which ``to_status`` may be reached, in enum order."""
    return [status for status in JobStatus if to_status in JOB_STATUS_TRANSITIONS[status]]


@dataclass
class Subscription:
    """Read-only view of the externally managed subscription."""
    user_id: str
    tier: SubscriptionTier
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    user_created_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.tier in PAID_TIERS


@dataclass(frozen=True)
class BillingPeriod:
    """Half-open accounting window ``[start, end)``."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class SubscriptionMinutes:
    used: int
    limit: int
    remaining: int


@dataclass
class UsageStats:
    subscription_minutes: SubscriptionMinutes
    topup_minutes: int
    total_remaining: int
    period_start: datetime
    period_end: datetime
    reset_at: str
    is_unlimited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriptionMinutes": {
                "used": self.subscription_minutes.used,
                "limit": self.subscription_minutes.limit,
                "remaining": self.subscription_minutes.remaining,
            },
            "topupMinutes": self.topup_minutes,
            "totalRemaining": self.total_remaining,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "resetAt": self.reset_at,
            "isUnlimited": self.is_unlimited,
        }


@dataclass
class TranscriptionDecision:
    """Advisory admission result. Does not reserve minutes."""
    allowed: bool
    reason: str
    stats: Optional[UsageStats] = None
    subscription: Optional[Subscription] = None
    will_use_topup: bool = False
    minutes_needed: Optional[int] = None
    existing_job_id: Optional[str] = None
    unlimited: bool = False


@dataclass
class TranscriptionJob:
    """
    A single transcription request for one video.
    Mutated by the background worker, finalized exactly once.
    """
    id: str
    user_id: str
    youtube_id: str
    status: JobStatus

    video_id: Optional[str] = None
    progress: int = 0
    current_stage: Optional[str] = None

    # Quoted at creation
    duration_seconds: Optional[int] = None
    estimated_cost_cents: Optional[int] = None
    # Admitted as an unlimited account; never charged
    unlimited: bool = False

    # Chunked processing
    total_chunks: int = 1
    completed_chunks: int = 0

    # Outcome
    transcript_data: Optional[Any] = None
    error_message: Optional[str] = None

    # Timestamps
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


@dataclass
class JobMetadata:
    """Creation-time attributes of a job."""
    video_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    estimated_cost_cents: Optional[int] = None
    total_chunks: int = 1
    unlimited: bool = False


class _Unset:
    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class JobUpdate:
    """
    Sparse progress patch. Fields left as ``UNSET`` are not written;
    ``None`` explicitly clears a nullable column.
    """
    status: Any = UNSET
    progress: Any = UNSET
    current_stage: Any = UNSET
    completed_chunks: Any = UNSET
    total_chunks: Any = UNSET
    started_at: Any = UNSET

    def is_set(self, name: str) -> bool:
        return getattr(self, name) is not UNSET

    @property
    def is_empty(self) -> bool:
        return not any(self.is_set(name) for name in self.__dataclass_fields__)

    def to_changes(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if self.is_set(name)
        }


@dataclass
class CreditLedgerEntry:
    """Minutes drawn from each pool for one job. Authoritative for refunds."""
    job_id: str
    user_id: str
    minutes_from_subscription: int
    minutes_from_topup: int
    consumed_at: datetime
    refunded_at: Optional[datetime] = None

    @property
    def total_minutes(self) -> int:
        return self.minutes_from_subscription + self.minutes_from_topup

    @property
    def is_refunded(self) -> bool:
        return self.refunded_at is not None


@dataclass
class ConsumptionResult:
    success: bool
    error: Optional[ErrorCode] = None
    minutes_from_subscription: int = 0
    minutes_from_topup: int = 0
    unlimited: bool = False


@dataclass
class RefundResult:
    success: bool
    minutes_refunded: int = 0
    error: Optional[ErrorCode] = None


@dataclass
class TopupResult:
    success: bool
    already_processed: bool = False
    new_balance: Optional[int] = None
    error: Optional[ErrorCode] = None


@dataclass
class JobOperationResult:
    success: bool
    job_id: Optional[str] = None
    error: Optional[ErrorCode] = None
    job: Optional[TranscriptionJob] = None
    consumption: Optional[ConsumptionResult] = None
    minutes_refunded: int = 0


@dataclass
class StartTranscriptionResult:
    """Outcome of a user's request to transcribe a video."""
    status: str  # completed | existing | pending | rejected
    job_id: Optional[str] = None
    job: Optional[TranscriptionJob] = None
    decision: Optional[TranscriptionDecision] = None
    estimated_minutes: int = 0
    estimated_cost_cents: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    error: Optional[ErrorCode] = None


def split_consumption(minutes: int, subscription_limit: int, used_minutes: int) -> tuple[int, int]:
    """
    Split a charge across the two pools: subscription first, top-up for the rest.

    Returns:
        (minutes_from_subscription, minutes_from_topup)
    """
    from_subscription = min(minutes, max(0, subscription_limit - used_minutes))
    return from_subscription, minutes - from_subscription
