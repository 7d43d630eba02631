from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from datetime import datetime, timezone, timedelta

from transcription_quota.app.domain.errors import (
    ErrorCode,
    JobCancelledError,
    StorageFailureError,
    TranscriptionProcessingError,
    WorkerConfigurationError,
)
from transcription_quota.app.domain.models import UNSET, JobStatus, JobUpdate, TranscriptionJob
from transcription_quota.app.services.job_service import JobService
from workers.transcriber.backend import AudioSource, TranscriptionBackend, TranscriptionOutput, load_backend
from workers.transcriber.config import WorkerConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("transcriber-worker")

# Progress milestones; 100 is only written by completion
DOWNLOAD_COMPLETE_PROGRESS = 10
MAX_RUNNING_PROGRESS = 99


class ProgressReporter:
    """
    Throttled progress updates for one job.

    An update refused because the job already reached a terminal status
    means the job was cancelled (or failed elsewhere); from then on every
    call raises JobCancelledError so the worker stops working on it.
    """

    def __init__(
        self,
        job_id: str,
        job_service: JobService,
        progress_interval_seconds: int,
        heartbeat_interval_seconds: int,
    ) -> None:
        self.job_id = job_id
        self.job_service = job_service
        self.progress_interval_seconds = progress_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.total_chunks = 1
        self.current_stage: str | None = None
        self.last_update: datetime | None = None
        self.cancelled = False
        self._lock = threading.Lock()

    def enter_stage(self, status: JobStatus, progress: int, total_chunks: int | None = None) -> None:
        if total_chunks:
            self.total_chunks = max(total_chunks, 1)
        self.current_stage = status.value
        self._send(JobUpdate(
            status=status,
            progress=progress,
            current_stage=status.value,
            total_chunks=self.total_chunks if total_chunks else UNSET,
        ))

    def on_chunk_completed(self, completed_chunks: int) -> None:
        self._raise_if_cancelled()

        now = datetime.now(timezone.utc)
        finished = completed_chunks >= self.total_chunks
        if not finished and not self._is_due(self.last_update, self.progress_interval_seconds, now):
            return

        span = MAX_RUNNING_PROGRESS - DOWNLOAD_COMPLETE_PROGRESS
        fraction = min(completed_chunks, self.total_chunks) / self.total_chunks
        self._send(JobUpdate(
            progress=DOWNLOAD_COMPLETE_PROGRESS + int(span * fraction),
            completed_chunks=completed_chunks,
        ))

    def heartbeat(self) -> None:
        now = datetime.now(timezone.utc)
        if self.cancelled or not self._is_due(self.last_update, self.heartbeat_interval_seconds, now):
            return
        try:
            self._send(JobUpdate(current_stage=self.current_stage))
        except JobCancelledError:
            logger.info("Job %s was cancelled; heartbeat stopped", self.job_id)

    def _send(self, update: JobUpdate) -> None:
        self._raise_if_cancelled()
        with self._lock:
            result = self.job_service.advance_job(self.job_id, update)
            self.last_update = datetime.now(timezone.utc)

        if result.success:
            return
        if result.error in (ErrorCode.ALREADY_TERMINAL, ErrorCode.JOB_NOT_FOUND):
            self.cancelled = True
            raise JobCancelledError(self.job_id)
        if result.error == ErrorCode.PROGRESS_REGRESSION:
            logger.debug("Ignoring stale progress for job %s", self.job_id)
            return
        logger.warning("Progress update rejected: job=%s, reason=%s", self.job_id, result.error)

    def _raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelledError(self.job_id)

    @staticmethod
    def _is_due(last_update: datetime | None, interval_seconds: int, now: datetime) -> bool:
        if last_update is None:
            return True
        return (now - last_update).total_seconds() >= interval_seconds


class TranscriberWorker:
    def __init__(
        self,
        config: WorkerConfig,
        job_service: JobService,
        backend: TranscriptionBackend,
    ):
        self.config = config
        self.job_service = job_service
        self.backend = backend
        self.running = False
        self.current_job_id: str | None = None
        self.jobs_processed = 0
        self.last_job_time: datetime | None = None
        self.last_stale_check: datetime | None = None

    def start(self) -> None:
        errors = self.config.validate()
        if errors:
            raise WorkerConfigurationError(errors)

        for signum in (signal.SIGTERM, signal.SIGINT):
            signal.signal(signum, self._handle_shutdown_signal)

        logger.info(
            "Transcriber %s polling every %ds with backend %s",
            self.config.worker_id,
            self.config.poll_interval_seconds,
            self.config.transcription_backend,
        )
        self.running = True
        self._run_main_loop()
        self._shutdown()

    def _run_main_loop(self) -> None:
        idle_polls = 0
        delay = float(self.config.poll_interval_seconds)

        while self.running:
            self._maybe_expire_stale_jobs()

            job = self._try_claim_next_job()
            if job is None:
                idle_polls += 1
                delay = self._next_poll_delay(delay)
                if self._idle_limit_reached():
                    break
                logger.debug("Queue empty (%d polls), next poll in %.1fs", idle_polls, delay)
                time.sleep(delay)
                continue

            idle_polls = 0
            delay = float(self.config.poll_interval_seconds)
            self._process_job(job)
            if self._job_limit_reached():
                break

    def _try_claim_next_job(self) -> TranscriptionJob | None:
        try:
            return self.job_service.claim_next_job()
        except StorageFailureError as error:
            logger.error("Failed to claim next job: %s", error)
            return None

    def _job_limit_reached(self) -> bool:
        limit = self.config.max_jobs_per_run
        if limit > 0 and self.jobs_processed >= limit:
            logger.info("Processed %d jobs, limit reached", self.jobs_processed)
            return True
        return False

    def _next_poll_delay(self, delay: float) -> float:
        return min(delay * 1.5, float(self.config.max_poll_interval_seconds))

    def _idle_limit_reached(self) -> bool:
        # Only a worker that has seen work may stop for lack of it
        if not self.config.shutdown_on_empty or self.last_job_time is None:
            return False

        idle_for = datetime.now(timezone.utc) - self.last_job_time
        if idle_for <= timedelta(minutes=self.config.empty_queue_shutdown_minutes):
            return False

        logger.info("No jobs for %s, stopping", idle_for)
        return True

    def _process_job(self, job: TranscriptionJob) -> None:
        self.current_job_id = job.id
        self.last_job_time = datetime.now(timezone.utc)
        logger.info("Processing job: id=%s, user=%s, video=%s", job.id, job.user_id, job.youtube_id)

        reporter = ProgressReporter(
            job_id=job.id,
            job_service=self.job_service,
            progress_interval_seconds=self.config.progress_update_interval_seconds,
            heartbeat_interval_seconds=self.config.heartbeat_interval_seconds,
        )
        reporter.current_stage = JobStatus.DOWNLOADING.value

        try:
            audio, output = self._run_with_retries(job, reporter)
            self._complete(job, audio, output)

        except JobCancelledError:
            logger.info("Job cancelled while processing, stopping: id=%s", job.id)

        except TranscriptionProcessingError as error:
            self._fail(job.id, str(error))

        except Exception as error:
            logger.exception("Unexpected error while processing job %s", job.id)
            self._fail(job.id, f"Unexpected error: {error}")

        finally:
            self.jobs_processed += 1
            self.current_job_id = None

    def _run_with_retries(
        self,
        job: TranscriptionJob,
        reporter: ProgressReporter,
    ) -> tuple[AudioSource, TranscriptionOutput]:
        attempt = 1
        while True:
            try:
                return self._fetch_and_transcribe(job, reporter)
            except TranscriptionProcessingError as error:
                if not error.retryable or attempt >= self.config.max_attempts:
                    raise
                logger.warning(
                    "Transcription attempt %d/%d failed, retrying: id=%s, error=%s",
                    attempt,
                    self.config.max_attempts,
                    job.id,
                    error,
                )
                attempt += 1

    def _fetch_and_transcribe(
        self,
        job: TranscriptionJob,
        reporter: ProgressReporter,
    ) -> tuple[AudioSource, TranscriptionOutput]:
        audio = self.backend.fetch_audio(job)
        try:
            if reporter.current_stage != JobStatus.TRANSCRIBING.value:
                reporter.enter_stage(
                    JobStatus.TRANSCRIBING,
                    progress=DOWNLOAD_COMPLETE_PROGRESS,
                    total_chunks=audio.total_chunks,
                )
            output = self._execute_transcription(job, audio, reporter)
        finally:
            self.backend.cleanup(audio)
        return audio, output

    def _execute_transcription(
        self,
        job: TranscriptionJob,
        audio: AudioSource,
        reporter: ProgressReporter,
    ) -> TranscriptionOutput:
        done = threading.Event()
        pulse = threading.Thread(target=self._heartbeat_loop, args=(reporter, done), daemon=True)
        pulse.start()
        try:
            return self.backend.transcribe(job, audio, reporter.on_chunk_completed)
        finally:
            done.set()
            pulse.join(timeout=self.config.heartbeat_interval_seconds)

    def _complete(self, job: TranscriptionJob, audio: AudioSource, output: TranscriptionOutput) -> None:
        measured = output.duration_seconds if output.duration_seconds is not None else audio.duration_seconds
        result = self.job_service.complete_job(
            job.id,
            output.transcript_data,
            measured_duration_seconds=measured,
        )

        if result.success:
            logger.info("Job completed successfully: id=%s, duration=%s", job.id, measured)
        elif result.error == ErrorCode.ALREADY_TERMINAL:
            logger.info("Job finished elsewhere before completion: id=%s", job.id)
        else:
            logger.error("Failed to complete job: id=%s, reason=%s", job.id, result.error)

    def _fail(self, job_id: str, error_message: str) -> None:
        logger.error("Job failed: id=%s, error=%s", job_id, error_message)
        result = self.job_service.fail_job(job_id, error_message)
        if not result.success and result.error != ErrorCode.ALREADY_TERMINAL:
            logger.error("Failed to mark job failed: id=%s, reason=%s", job_id, result.error)

    def _maybe_expire_stale_jobs(self) -> None:
        now = datetime.now(timezone.utc)
        interval = timedelta(minutes=self.config.stale_check_interval_minutes)
        if self.last_stale_check is not None and now - self.last_stale_check < interval:
            return

        self.last_stale_check = now
        expired = self.job_service.expire_stale_jobs(self.config.stale_job_minutes)
        if expired:
            logger.info("Expired %d stale jobs", len(expired))

    def _handle_shutdown_signal(self, signum: int, frame: object) -> None:
        logger.info("Signal %d received, finishing current job before exit", signum)
        self.running = False

    def _shutdown(self) -> None:
        if self.current_job_id:
            logger.warning("Exiting with job %s still active; stale expiry will reclaim it", self.current_job_id)
        logger.info("Transcriber %s stopped after %d jobs", self.config.worker_id, self.jobs_processed)

    def _heartbeat_loop(self, reporter: ProgressReporter, done: threading.Event) -> None:
        while not done.wait(self.config.heartbeat_interval_seconds):
            reporter.heartbeat()


def create_default_dependencies(config: WorkerConfig) -> tuple[JobService, TranscriptionBackend]:
    from supabase import create_client

    from transcription_quota.app.infra.db.supabase_jobs_repo import SupabaseJobRepository
    from transcription_quota.app.infra.db.supabase_ledger_repo import (
        SupabaseCreditLedgerRepository,
        SupabaseSubscriptionRepository,
    )
    from transcription_quota.app.services.ledger_service import CreditLedgerService
    from transcription_quota.app.services.usage_service import UsageService

    client = create_client(config.supabase_url, config.supabase_key)
    usage_service = UsageService(
        SupabaseSubscriptionRepository(client),
        SupabaseCreditLedgerRepository(client),
    )
    job_service = JobService(
        SupabaseJobRepository(client),
        CreditLedgerService(usage_service, SupabaseCreditLedgerRepository(client)),
    )

    return job_service, load_backend(config.transcription_backend)


def main() -> None:
    config = get_config()
    errors = config.validate()
    if errors:
        raise WorkerConfigurationError(errors)

    job_service, backend = create_default_dependencies(config)

    worker = TranscriberWorker(
        config=config,
        job_service=job_service,
        backend=backend,
    )

    worker.start()


if __name__ == "__main__":
    main()
