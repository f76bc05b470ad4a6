"""
Transcription Backend Implementations

Backends:
    - LocalWhisperBackend: faster-whisper in-process (raw float32 samples)
    - OpenAIWhisperBackend: OpenAI-compatible transcription API (float32 WAV)
    - WhisperCppBackend: whisper.cpp server (16-bit PCM WAV)
    - MockTranscriptionBackend: fixed transcript (testing)

faster-whisper is imported lazily by LocalWhisperBackend, so this package
imports without the `local` extra installed.
"""

from .base import TranscriptionBackend, BackendStats
from .local_whisper import LocalWhisperBackend
from .openai_whisper import OpenAIWhisperBackend
from .whispercpp import WhisperCppBackend
from .mock import MockTranscriptionBackend

__all__ = [
    "TranscriptionBackend",
    "BackendStats",
    "LocalWhisperBackend",
    "OpenAIWhisperBackend",
    "WhisperCppBackend",
    "MockTranscriptionBackend",
]
