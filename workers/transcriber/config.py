# workers/transcriber/config.py
"""
Environment-driven settings for the transcription worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in ("1", "true", "yes")


@dataclass
class WorkerConfig:
    """Polling, retry and progress settings for one worker process."""

    worker_id: str = os.getenv("WORKER_ID", f"transcriber-{os.getpid()}")

    # Queue polling; the delay grows by 1.5x per empty poll up to the max
    poll_interval_seconds: int = _env_int("WORKER_POLL_INTERVAL", 5)
    max_poll_interval_seconds: int = _env_int("WORKER_MAX_POLL_INTERVAL", 30)

    # 0 keeps the worker running indefinitely
    max_jobs_per_run: int = _env_int("WORKER_MAX_JOBS_PER_RUN", 0)
    shutdown_on_empty: bool = _env_flag("WORKER_SHUTDOWN_ON_EMPTY")
    empty_queue_shutdown_minutes: int = _env_int("WORKER_EMPTY_SHUTDOWN_MINUTES", 10)

    # Attempts per job for failures the backend marks retryable
    max_attempts: int = _env_int("WORKER_MAX_ATTEMPTS", 2)

    progress_update_interval_seconds: int = _env_int("WORKER_PROGRESS_INTERVAL", 5)
    heartbeat_interval_seconds: int = _env_int("WORKER_HEARTBEAT_INTERVAL", 30)

    stale_job_minutes: int = _env_int("STALE_JOB_MINUTES", 60)
    stale_check_interval_minutes: int = _env_int("WORKER_STALE_CHECK_MINUTES", 5)

    # "package.module:factory" returning a TranscriptionBackend
    transcription_backend: str = os.getenv("TRANSCRIPTION_BACKEND", "")

    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    def validate(self) -> list[str]:
        """Return every configuration problem found; empty when usable."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")

        if not self.transcription_backend:
            errors.append("TRANSCRIPTION_BACKEND is required")
        elif ":" not in self.transcription_backend:
            errors.append("TRANSCRIPTION_BACKEND must look like 'module:factory'")

        for name, value in (
            ("WORKER_POLL_INTERVAL", self.poll_interval_seconds),
            ("WORKER_HEARTBEAT_INTERVAL", self.heartbeat_interval_seconds),
            ("STALE_JOB_MINUTES", self.stale_job_minutes),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive")
        if self.max_attempts < 1:
            errors.append("WORKER_MAX_ATTEMPTS must be at least 1")

        return errors


def get_config() -> WorkerConfig:
    return WorkerConfig()
