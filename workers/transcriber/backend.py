# workers/transcriber/backend.py
"""
Abstract interface for the component that fetches audio and produces a
transcript. The worker only drives job state; the actual speech-to-text
work is plugged in through TRANSCRIPTION_BACKEND.
"""
from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from transcription_quota.app.domain.errors import WorkerConfigurationError
from transcription_quota.app.domain.models import TranscriptionJob

ChunkCallback = Callable[[int], None]


@dataclass
class AudioSource:
    """Audio fetched for a job."""
    location: str
    duration_seconds: Optional[float] = None
    total_chunks: int = 1


@dataclass
class TranscriptionOutput:
    transcript_data: Any
    duration_seconds: Optional[float] = None


class TranscriptionBackend(ABC):
    """
    Abstract interface for audio fetching and transcription.

    Implementations raise TranscriptionProcessingError for failures; set
    ``retryable=True`` when a second attempt may succeed.
    """

    @abstractmethod
    def fetch_audio(self, job: TranscriptionJob) -> AudioSource:
        """
        Download the audio for a job.

        Args:
            job: The claimed job

        Returns:
            AudioSource, with the measured duration when known
        """
        pass

    @abstractmethod
    def transcribe(
        self,
        job: TranscriptionJob,
        audio: AudioSource,
        on_chunk_completed: ChunkCallback,
    ) -> TranscriptionOutput:
        """
        Transcribe previously fetched audio.

        Args:
            job: The claimed job
            audio: Result of fetch_audio
            on_chunk_completed: Called with the number of chunks done so far.
                May raise JobCancelledError, which must not be caught.

        Returns:
            TranscriptionOutput with the opaque transcript payload
        """
        pass

    def cleanup(self, audio: AudioSource) -> None:
        """Release anything fetch_audio left behind."""
        return None


def load_backend(target: str) -> TranscriptionBackend:
    """
    Build a backend from a ``"package.module:factory"`` reference.

    Raises:
        WorkerConfigurationError: The reference cannot be resolved
    """
    module_name, _, factory_name = target.partition(":")
    if not module_name or not factory_name:
        raise WorkerConfigurationError([f"Invalid TRANSCRIPTION_BACKEND: {target!r}"])

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise WorkerConfigurationError([f"Cannot import {module_name}: {exc}"]) from exc

    factory = getattr(module, factory_name, None)
    if factory is None:
        raise WorkerConfigurationError([f"{module_name} has no attribute {factory_name}"])

    backend = factory()
    if not isinstance(backend, TranscriptionBackend):
        raise WorkerConfigurationError([f"{target} did not return a TranscriptionBackend"])
    return backend
