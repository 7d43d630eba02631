# transcription_quota/app/infra/db/base.py
"""
Abstract base classes for the persistence boundary.
Every shared mutable resource (job status, period usage, top-up balance)
is guarded here, never in application memory.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from transcription_quota.app.domain.models import (
    BillingPeriod,
    ConsumptionResult,
    CreditLedgerEntry,
    JobMetadata,
    JobStatus,
    Subscription,
    TopupResult,
    TranscriptionJob,
)


class JobRepository(ABC):
    """
    Abstract interface for transcription job storage.

    Implementations:
    - SupabaseJobRepository: Postgres table behind PostgREST
    - InMemoryJobRepository: single-process store for tests and local runs
    """

    @abstractmethod
    def create_job(
        self,
        user_id: str,
        youtube_id: str,
        metadata: JobMetadata,
    ) -> TranscriptionJob:
        """
        Insert a new job in PENDING status with progress 0.

        Args:
            user_id: Owner of the job
            youtube_id: Video being transcribed
            metadata: Creation-time attributes (duration, cost quote, chunks)

        Returns:
            The created TranscriptionJob

        Raises:
            ActiveJobExistsError: Another non-terminal job exists for
                (user_id, youtube_id)
            StorageFailureError: Storage unreachable
        """
        pass

    @abstractmethod
    def get_job_by_id(
        self,
        job_id: str,
        user_id: Optional[str] = None,
    ) -> Optional[TranscriptionJob]:
        """
        Get a job by its ID, optionally filtering by owner.

        Args:
            job_id: The job ID
            user_id: If provided, only return if owned by this user

        Returns:
            The job, or None if not found
        """
        pass

    @abstractmethod
    def find_latest_job(
        self,
        youtube_id: str,
        statuses: Iterable[JobStatus],
        user_id: Optional[str] = None,
        order_by: str = "created_at",
    ) -> Optional[TranscriptionJob]:
        """
        Most recent job for a video whose status is in ``statuses``.

        Args:
            youtube_id: The video
            statuses: Accepted statuses
            user_id: Restrict to this owner when given
            order_by: Timestamp column used to pick the most recent row

        Returns:
            The job, or None
        """
        pass

    @abstractmethod
    def get_jobs_by_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[TranscriptionJob]:
        """
        Get jobs for a user, ordered by creation date descending.
        """
        pass

    @abstractmethod
    def update_job_if(
        self,
        job_id: str,
        expected_statuses: Iterable[JobStatus],
        changes: dict[str, Any],
        max_current_progress: Optional[int] = None,
    ) -> Optional[TranscriptionJob]:
        """
        Conditionally apply ``changes`` to a job in a single statement.

        The row is only written when its current status is one of
        ``expected_statuses`` and, if ``max_current_progress`` is given,
        its current progress is not above that value.

        Args:
            job_id: The job to update
            expected_statuses: Statuses the job must currently hold
            changes: Column values (native Python types) to write
            max_current_progress: Upper bound on the stored progress

        Returns:
            The updated job, or None when the condition did not match
        """
        pass

    @abstractmethod
    def find_oldest_job_id(self, status: JobStatus) -> Optional[str]:
        """
        ID of the oldest job in ``status``, or None.
        """
        pass

    @abstractmethod
    def find_stale_job_ids(self, updated_before: datetime) -> list[str]:
        """
        IDs of non-terminal jobs not updated since ``updated_before``.
        """
        pass


class CreditLedgerRepository(ABC):
    """
    Abstract interface for period usage and top-up balances.

    ``consume_minutes``, ``refund_minutes`` and ``add_topup_credits`` must
    each run as one transaction at the storage layer.
    """

    @abstractmethod
    def get_used_minutes(
        self,
        user_id: str,
        period: BillingPeriod,
    ) -> int:
        """
        Subscription-pool minutes consumed inside ``[period.start, period.end)``,
        excluding refunded consumption.
        """
        pass

    @abstractmethod
    def get_topup_balance(self, user_id: str) -> int:
        """
        Current purchased minute balance (0 when the user has none).
        """
        pass

    @abstractmethod
    def consume_minutes(
        self,
        user_id: str,
        job_id: str,
        minutes: int,
        subscription_limit: int,
        period: BillingPeriod,
    ) -> ConsumptionResult:
        """
        Atomically split and record consumption for a job.

        Re-reads usage and balance under transaction isolation, draws from
        the subscription pool first and the top-up pool for the shortfall,
        and records nothing when the top-up balance cannot cover it.

        Args:
            user_id: The user being charged
            job_id: Key for the ledger entry
            minutes: Total minutes to consume
            subscription_limit: Subscription allowance for the period
            period: Period whose usage bounds the subscription pool

        Returns:
            ConsumptionResult with the split, or INSUFFICIENT_CREDITS
        """
        pass

    @abstractmethod
    def refund_minutes(self, job_id: str) -> int:
        """
        Reverse the recorded split for a job.

        Returns:
            Minutes refunded; 0 when nothing was recorded or already refunded
        """
        pass

    @abstractmethod
    def get_ledger_entry(self, job_id: str) -> Optional[CreditLedgerEntry]:
        """
        The consumption recorded for a job, if any.
        """
        pass

    @abstractmethod
    def add_topup_credits(
        self,
        user_id: str,
        external_payment_id: str,
        minutes: int,
        amount_paid: int,
    ) -> TopupResult:
        """
        Credit purchased minutes once per ``external_payment_id``.

        Returns:
            TopupResult with ``already_processed`` set on replays
        """
        pass


class SubscriptionRepository(ABC):
    """
    Read-only access to the subscription managed by the billing system.
    """

    @abstractmethod
    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        Returns:
            The user's subscription, or None when it cannot be resolved
        """
        pass
