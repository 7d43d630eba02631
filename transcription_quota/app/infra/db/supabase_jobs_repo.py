from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from transcription_quota.app.domain.errors import ActiveJobExistsError, StorageFailureError
from transcription_quota.app.domain.models import (
    IN_FLIGHT_JOB_STATUSES,
    JobMetadata,
    JobStatus,
    TranscriptionJob,
)
from transcription_quota.app.infra.db.base import JobRepository

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
STORAGE_ERRORS = (APIError, httpx.HTTPError, ConnectionError, TimeoutError)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None

    try:
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def _safe_int(value: object, default: int = 0) -> int:
    return int(value) if value else default


def _optional_int(value: object) -> int | None:
    return int(value) if value is not None else None


def _safe_str(value: object) -> str | None:
    return str(value) if value else None


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _row_to_job(row: dict[str, Any]) -> TranscriptionJob:
    return TranscriptionJob(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        youtube_id=str(row["youtube_id"]),
        status=JobStatus(str(row["status"])),
        video_id=_safe_str(row.get("video_id")),
        progress=_safe_int(row.get("progress")),
        current_stage=_safe_str(row.get("current_stage")),
        duration_seconds=_optional_int(row.get("duration_seconds")),
        estimated_cost_cents=_optional_int(row.get("estimated_cost_cents")),
        unlimited=bool(row.get("unlimited")),
        total_chunks=_safe_int(row.get("total_chunks"), 1),
        completed_chunks=_safe_int(row.get("completed_chunks")),
        transcript_data=row.get("transcript_data"),
        error_message=_safe_str(row.get("error_message")),
        created_at=_parse_datetime(row.get("created_at")),
        started_at=_parse_datetime(row.get("started_at")),
        completed_at=_parse_datetime(row.get("completed_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
    )


def _status_values(statuses: Iterable[JobStatus]) -> list[str]:
    return [JobStatus(status).value for status in statuses]


def _create_supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(url, key)


class SupabaseJobRepository(JobRepository):
    TABLE_NAME = "transcription_jobs"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()
        logger.info("SupabaseJobRepository initialized")

    def create_job(
        self,
        user_id: str,
        youtube_id: str,
        metadata: JobMetadata,
    ) -> TranscriptionJob:
        job_data = self._build_job_data(user_id, youtube_id, metadata)

        try:
            result = self._client.table(self.TABLE_NAME).insert(job_data).execute()
        except APIError as error:
            # Partial unique index on (user_id, youtube_id) for active statuses
            if error.code == UNIQUE_VIOLATION:
                raise ActiveJobExistsError(user_id, youtube_id) from error
            logger.error("Storage error creating job: %s", error)
            raise StorageFailureError("create_job", str(error)) from error
        except STORAGE_ERRORS as error:
            logger.error("Network error creating job: %s", error)
            raise StorageFailureError("create_job", str(error)) from error

        if not result.data:
            raise StorageFailureError("create_job", "insert returned no row")

        job = _row_to_job(result.data[0])
        logger.info("Created transcription job: id=%s, user=%s, video=%s", job.id, user_id, youtube_id)
        return job

    def _build_job_data(
        self,
        user_id: str,
        youtube_id: str,
        metadata: JobMetadata,
    ) -> dict[str, Any]:
        now = _now_utc().isoformat()
        return {
            "id": str(uuid4()),
            "user_id": user_id,
            "youtube_id": youtube_id,
            "video_id": metadata.video_id,
            "duration_seconds": metadata.duration_seconds,
            "estimated_cost_cents": metadata.estimated_cost_cents,
            "unlimited": metadata.unlimited,
            "total_chunks": metadata.total_chunks,
            "completed_chunks": 0,
            "status": JobStatus.PENDING.value,
            "progress": 0,
            "created_at": now,
            "updated_at": now,
        }

    def get_job_by_id(self, job_id: str, user_id: str | None = None) -> TranscriptionJob | None:
        try:
            query = self._client.table(self.TABLE_NAME).select("*").eq("id", job_id)

            if user_id:
                query = query.eq("user_id", user_id)

            result = query.limit(1).execute()
        except STORAGE_ERRORS as error:
            logger.error("Network error getting job: %s", error)
            raise StorageFailureError("get_job_by_id", str(error)) from error

        return _row_to_job(result.data[0]) if result.data else None

    def find_latest_job(
        self,
        youtube_id: str,
        statuses: Iterable[JobStatus],
        user_id: str | None = None,
        order_by: str = "created_at",
    ) -> TranscriptionJob | None:
        try:
            query = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("youtube_id", youtube_id)
                .in_("status", _status_values(statuses))
            )

            if user_id:
                query = query.eq("user_id", user_id)

            result = query.order(order_by, desc=True).limit(1).execute()
        except STORAGE_ERRORS as error:
            logger.error("Network error finding job for video %s: %s", youtube_id, error)
            raise StorageFailureError("find_latest_job", str(error)) from error

        return _row_to_job(result.data[0]) if result.data else None

    def get_jobs_by_user(self, user_id: str, limit: int = 20, offset: int = 0) -> list[TranscriptionJob]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except STORAGE_ERRORS as error:
            logger.error("Network error getting jobs for user: %s", error)
            raise StorageFailureError("get_jobs_by_user", str(error)) from error

        return [_row_to_job(row) for row in (result.data or [])]

    def update_job_if(
        self,
        job_id: str,
        expected_statuses: Iterable[JobStatus],
        changes: dict[str, Any],
        max_current_progress: int | None = None,
    ) -> TranscriptionJob | None:
        update_data = {column: _serialize(value) for column, value in changes.items()}
        update_data["updated_at"] = _now_utc().isoformat()

        try:
            query = (
                self._client.table(self.TABLE_NAME)
                .update(update_data)
                .eq("id", job_id)
                .in_("status", _status_values(expected_statuses))
            )

            if max_current_progress is not None:
                query = query.lte("progress", max_current_progress)

            result = query.execute()
        except STORAGE_ERRORS as error:
            logger.error("Network error updating job %s: %s", job_id, error)
            raise StorageFailureError("update_job_if", str(error)) from error

        if not result.data:
            return None
        return _row_to_job(result.data[0])

    def find_oldest_job_id(self, status: JobStatus) -> str | None:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("id")
                .eq("status", JobStatus(status).value)
                .order("created_at")
                .limit(1)
                .execute()
            )
        except STORAGE_ERRORS as error:
            logger.error("Network error polling for %s jobs: %s", status, error)
            raise StorageFailureError("find_oldest_job_id", str(error)) from error

        return str(result.data[0]["id"]) if result.data else None

    def find_stale_job_ids(self, updated_before: datetime) -> list[str]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("id")
                .in_("status", _status_values(IN_FLIGHT_JOB_STATUSES))
                .lt("updated_at", updated_before.isoformat())
                .execute()
            )
        except STORAGE_ERRORS as error:
            logger.error("Network error finding stale jobs: %s", error)
            raise StorageFailureError("find_stale_job_ids", str(error)) from error

        return [str(row["id"]) for row in (result.data or [])]
