"""
Data Models for STT Router Microservice

Value types shared by the encoder, registry, dispatcher and orchestrator:
    AudioSegment: one captured span of speech (immutable)
    TranscriptionRequest: segment + encoded payload, owned by the dispatcher
    TranscriptionResult: success/failure tagged with the originating segment id
    ErrorKind: failure taxonomy reported to consumers
    OrchestratorStatus: read-only snapshot served by /status

Exceptions:
    STTRouterError and its subclasses (EncodingFailed, BackendUnavailable,
    BackendInvocationFailed, DetectorError)
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

CAPTURE_SAMPLE_RATE = 16000  # Fixed capture rate shared by VAD and Whisper
CAPTURE_CHANNELS = 1


# ============================================================================
# Exceptions
# ============================================================================

class STTRouterError(Exception):
    """Base class for STT router failures."""
    pass


class EncodingFailed(STTRouterError):
    """Raised when a sample buffer cannot be encoded (empty, wrong rate, NaN)."""
    pass


class BackendUnavailable(STTRouterError):
    """Raised when a backend id does not resolve to a usable backend."""
    pass


class BackendInvocationFailed(STTRouterError):
    """Raised when a backend call fails; the original reason is kept in the message."""
    pass


class DetectorError(STTRouterError):
    """Raised when the upstream voice activity detector is unusable."""
    pass


class ErrorKind(Enum):
    """Failure kinds reported through on_transcription_failed."""
    BACKEND_UNAVAILABLE = "backend_unavailable"
    ENCODING_FAILED = "encoding_failed"
    BACKEND_INVOCATION_FAILED = "backend_invocation_failed"
    DETECTOR_ERROR = "detector_error"


# ============================================================================
# Segment / request / result
# ============================================================================

@dataclass(frozen=True)
class AudioSegment:
    """
    One captured span of speech audio.

    Samples are copied into a read-only float32 array on construction so the
    segment can be handed to exactly one encode+dispatch path without any
    other writer touching it.
    """
    segment_id: int
    samples: np.ndarray
    backend_id: str                                   # Frozen at capture time
    captured_at: float = field(default_factory=time.time)
    sample_rate: int = CAPTURE_SAMPLE_RATE
    channels: int = CAPTURE_CHANNELS

    def __post_init__(self):
        samples = np.array(self.samples, dtype=np.float32, copy=True).reshape(-1)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @property
    def duration_s(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


@dataclass
class TranscriptionRequest:
    """Segment plus its backend-specific payload. Never shared across backends."""
    segment: AudioSegment
    payload: bytes
    prompt: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionResult:
    """
    Outcome of one dispatch.

    Success carries text; failure carries error_kind and an opaque
    error_detail for diagnostics. Matched back to its segment by segment_id.
    """
    segment_id: int
    backend_id: str
    text: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    completed_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, segment_id: int, backend_id: str, text: str) -> "TranscriptionResult":
        return cls(segment_id=segment_id, backend_id=backend_id, text=text)

    @classmethod
    def failure(
        cls,
        segment_id: int,
        backend_id: str,
        error_kind: ErrorKind,
        error_detail: Optional[str] = None,
    ) -> "TranscriptionResult":
        return cls(
            segment_id=segment_id,
            backend_id=backend_id,
            error_kind=error_kind,
            error_detail=error_detail,
        )


@dataclass(frozen=True)
class OrchestratorStatus:
    """Point-in-time view of the orchestrator session."""
    state: str
    listening: bool
    busy: bool
    errored: Optional[str]
    capture_enabled: bool
    muted: bool
    autosend: bool
    backend_id: str
    in_flight_segment_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
