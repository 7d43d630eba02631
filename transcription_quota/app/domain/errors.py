# transcription_quota/app/domain/errors.py
"""
Error codes and exceptions for transcription metering.

Business outcomes (rejections, lost races) are returned as ErrorCode values
on result objects; exceptions are reserved for infrastructure failures and
for control flow inside the worker.
"""
from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable reasons returned by services and the HTTP layer."""
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    NOT_PRO = "NOT_PRO"
    EXISTING_JOB = "EXISTING_JOB"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    PROGRESS_REGRESSION = "PROGRESS_REGRESSION"
    NOT_ADMITTED = "NOT_ADMITTED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PAYMENT_ID = "INVALID_PAYMENT_ID"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"


class TranscriptionError(Exception):
    pass


class StorageFailureError(TranscriptionError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Storage failure during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class ActiveJobExistsError(TranscriptionError):
    def __init__(self, user_id: str, youtube_id: str):
        super().__init__(f"Active job already exists for user={user_id}, video={youtube_id}")
        self.user_id = user_id
        self.youtube_id = youtube_id


class JobCancelledError(TranscriptionError):
    def __init__(self, job_id: str):
        super().__init__(f"Job was cancelled or finished elsewhere: {job_id}")
        self.job_id = job_id


class TranscriptionProcessingError(TranscriptionError):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class WorkerConfigurationError(TranscriptionError):
    def __init__(self, errors: list[str]):
        super().__init__(f"Worker configuration errors: {', '.join(errors)}")
        self.errors = errors
