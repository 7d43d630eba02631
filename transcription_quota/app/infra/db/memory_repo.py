# transcription_quota/app/infra/db/memory_repo.py
"""
Single-process repositories used for local runs (STORAGE_BACKEND=memory)
and tests. Each repository serializes its operations with one lock, which
plays the role the database transaction plays in the Supabase backend.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from transcription_quota.app.domain.errors import ActiveJobExistsError, ErrorCode
from transcription_quota.app.domain.models import (
    IN_FLIGHT_JOB_STATUSES,
    BillingPeriod,
    ConsumptionResult,
    CreditLedgerEntry,
    JobMetadata,
    JobStatus,
    Subscription,
    TopupResult,
    TranscriptionJob,
    split_consumption,
)
from transcription_quota.app.infra.db.base import (
    CreditLedgerRepository,
    JobRepository,
    SubscriptionRepository,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobRepository(JobRepository):
    def __init__(self, clock: Clock = _utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, TranscriptionJob] = {}
        self._insert_order: dict[str, int] = {}
        self._sequence = count()

    def create_job(self, user_id: str, youtube_id: str, metadata: JobMetadata) -> TranscriptionJob:
        with self._lock:
            for job in self._jobs.values():
                if job.user_id == user_id and job.youtube_id == youtube_id and job.is_active:
                    raise ActiveJobExistsError(user_id, youtube_id)

            now = self._clock()
            job = TranscriptionJob(
                id=str(uuid4()),
                user_id=user_id,
                youtube_id=youtube_id,
                status=JobStatus.PENDING,
                video_id=metadata.video_id,
                progress=0,
                duration_seconds=metadata.duration_seconds,
                estimated_cost_cents=metadata.estimated_cost_cents,
                unlimited=metadata.unlimited,
                total_chunks=metadata.total_chunks,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            self._insert_order[job.id] = next(self._sequence)
            return replace(job)

    def get_job_by_id(self, job_id: str, user_id: Optional[str] = None) -> Optional[TranscriptionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (user_id and job.user_id != user_id):
                return None
            return replace(job)

    def find_latest_job(
        self,
        youtube_id: str,
        statuses: Iterable[JobStatus],
        user_id: Optional[str] = None,
        order_by: str = "created_at",
    ) -> Optional[TranscriptionJob]:
        accepted = set(statuses)
        with self._lock:
            matches = [
                job for job in self._jobs.values()
                if job.youtube_id == youtube_id
                and job.status in accepted
                and (not user_id or job.user_id == user_id)
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda job: self._sort_key(job, order_by))
            return replace(latest)

    def _sort_key(self, job: TranscriptionJob, column: str) -> tuple[datetime, int]:
        moment = getattr(job, column) or datetime.min.replace(tzinfo=timezone.utc)
        return moment, self._insert_order[job.id]

    def get_jobs_by_user(self, user_id: str, limit: int = 20, offset: int = 0) -> list[TranscriptionJob]:
        with self._lock:
            owned = [job for job in self._jobs.values() if job.user_id == user_id]
            owned.sort(key=lambda job: self._sort_key(job, "created_at"), reverse=True)
            return [replace(job) for job in owned[offset:offset + limit]]

    def update_job_if(
        self,
        job_id: str,
        expected_statuses: Iterable[JobStatus],
        changes: dict[str, Any],
        max_current_progress: Optional[int] = None,
    ) -> Optional[TranscriptionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in set(expected_statuses):
                return None
            if max_current_progress is not None and job.progress > max_current_progress:
                return None

            for column, value in changes.items():
                if column == "status":
                    value = JobStatus(value)
                setattr(job, column, value)
            job.updated_at = self._clock()
            return replace(job)

    def find_oldest_job_id(self, status: JobStatus) -> Optional[str]:
        with self._lock:
            candidates = [job for job in self._jobs.values() if job.status == status]
            if not candidates:
                return None
            return min(candidates, key=lambda job: self._sort_key(job, "created_at")).id

    def find_stale_job_ids(self, updated_before: datetime) -> list[str]:
        with self._lock:
            return [
                job.id for job in self._jobs.values()
                if job.status in IN_FLIGHT_JOB_STATUSES
                and job.updated_at is not None
                and job.updated_at < updated_before
            ]


class InMemoryCreditLedgerRepository(CreditLedgerRepository):
    def __init__(self, clock: Clock = _utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CreditLedgerEntry] = {}
        self._balances: dict[str, int] = {}
        self._payments: set[str] = set()

    def set_topup_balance(self, user_id: str, minutes: int) -> None:
        with self._lock:
            self._balances[user_id] = minutes

    def get_used_minutes(self, user_id: str, period: BillingPeriod) -> int:
        with self._lock:
            return self._used_minutes(user_id, period)

    def _used_minutes(self, user_id: str, period: BillingPeriod) -> int:
        return sum(
            entry.minutes_from_subscription
            for entry in self._entries.values()
            if entry.user_id == user_id
            and not entry.is_refunded
            and period.contains(entry.consumed_at)
        )

    def get_topup_balance(self, user_id: str) -> int:
        with self._lock:
            return self._balances.get(user_id, 0)

    def consume_minutes(
        self,
        user_id: str,
        job_id: str,
        minutes: int,
        subscription_limit: int,
        period: BillingPeriod,
    ) -> ConsumptionResult:
        with self._lock:
            existing = self._entries.get(job_id)
            if existing is not None:
                if existing.is_refunded:
                    return ConsumptionResult(success=False, error=ErrorCode.ALREADY_REFUNDED)
                return ConsumptionResult(
                    success=True,
                    minutes_from_subscription=existing.minutes_from_subscription,
                    minutes_from_topup=existing.minutes_from_topup,
                )

            used = self._used_minutes(user_id, period)
            from_subscription, from_topup = split_consumption(minutes, subscription_limit, used)
            balance = self._balances.get(user_id, 0)

            if from_topup > balance:
                return ConsumptionResult(success=False, error=ErrorCode.INSUFFICIENT_CREDITS)

            self._entries[job_id] = CreditLedgerEntry(
                job_id=job_id,
                user_id=user_id,
                minutes_from_subscription=from_subscription,
                minutes_from_topup=from_topup,
                consumed_at=self._clock(),
            )
            self._balances[user_id] = balance - from_topup
            return ConsumptionResult(
                success=True,
                minutes_from_subscription=from_subscription,
                minutes_from_topup=from_topup,
            )

    def refund_minutes(self, job_id: str) -> int:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None or entry.is_refunded:
                return 0

            self._balances[entry.user_id] = self._balances.get(entry.user_id, 0) + entry.minutes_from_topup
            entry.refunded_at = self._clock()
            return entry.total_minutes

    def get_ledger_entry(self, job_id: str) -> Optional[CreditLedgerEntry]:
        with self._lock:
            entry = self._entries.get(job_id)
            return replace(entry) if entry else None

    def add_topup_credits(
        self,
        user_id: str,
        external_payment_id: str,
        minutes: int,
        amount_paid: int,
    ) -> TopupResult:
        with self._lock:
            if external_payment_id in self._payments:
                return TopupResult(
                    success=True,
                    already_processed=True,
                    new_balance=self._balances.get(user_id, 0),
                )

            self._payments.add(external_payment_id)
            new_balance = self._balances.get(user_id, 0) + minutes
            self._balances[user_id] = new_balance
            logger.debug("Top-up recorded: user=%s, payment=%s, paid=%d", user_id, external_payment_id, amount_paid)
            return TopupResult(success=True, new_balance=new_balance)


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def set_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions[subscription.user_id] = subscription

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            subscription = self._subscriptions.get(user_id)
            return replace(subscription) if subscription else None
