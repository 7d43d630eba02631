# transcription_quota/__init__.py
"""Transcription minute metering and job lifecycle."""
