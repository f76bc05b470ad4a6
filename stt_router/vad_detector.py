"""
Voice Activity Detectors for STT Router Microservice

Detector boundary consumed by the orchestrator:
    listening / errored status, start(), pause()
Events are delivered by calling SpeechOrchestrator.on_speech_start() and
on_speech_end(samples).

Detectors:
    ExternalDetector: client-side VAD reporting over the WebSocket; only
                      tracks listening/error status
    SileroSpeechDetector: server-side Silero VAD over 512-sample chunks with
                          min-speech and silence-timeout windows

torch is imported lazily by SileroVAD, so the external detector works
without the `vad` extra installed.
"""

import logging
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .models import CAPTURE_SAMPLE_RATE, DetectorError

logger = logging.getLogger(__name__)

SILERO_CHUNK_SAMPLES = 512  # 32ms at 16kHz, fixed by the Silero model


class SpeechDetector(Protocol):
    """Status and control surface of a voice activity detector."""

    @property
    def listening(self) -> bool:
        ...

    @property
    def errored(self) -> Optional[BaseException]:
        ...

    def start(self) -> None:
        ...

    def pause(self) -> None:
        ...


class ExternalDetector:
    """
    Status holder for a detector running outside the service.

    The client decides when speech starts and ends; the service only needs to
    know whether capture should be open and whether the client VAD failed.
    """

    def __init__(self):
        self._listening = False
        self._errored: Optional[BaseException] = None

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def errored(self) -> Optional[BaseException]:
        return self._errored

    def start(self) -> None:
        self._listening = True

    def pause(self) -> None:
        self._listening = False

    def fail(self, error: BaseException) -> None:
        """Record a client-side VAD failure (model load error, mic denied)."""
        self._errored = error
        self._listening = False
        logger.error(f"❌ External VAD reported error: {error}")

    def clear_error(self) -> None:
        if self._errored is not None:
            logger.info("✅ External VAD error cleared")
        self._errored = None


class SileroVAD:
    """
    Silero VAD wrapper for speech detection.

    Loads Silero VAD model from torch.hub and provides
    speech probability on 512-sample chunks.
    """

    def __init__(self, threshold: float = 0.5, device: str = "cpu"):
        """
        Initialize Silero VAD.

        Args:
            threshold: Speech detection threshold (0.0-1.0)
            device: Device to run on ("cuda" or "cpu")

        Raises:
            DetectorError: torch missing or model failed to load
        """
        self.threshold = threshold
        self.device = device
        self.model = None
        self._torch = None
        self._load_model()

        logger.info(f"✅ Silero VAD initialized | Device: {self.device} | Threshold: {self.threshold}")

    def _load_model(self):
        """Load Silero VAD model from torch.hub."""
        try:
            import torch
        except ImportError as e:
            raise DetectorError("torch is not installed (install the 'vad' extra)") from e

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA not available, Silero VAD falling back to CPU")
            self.device = "cpu"

        try:
            logger.info("📥 Loading Silero VAD model from torch.hub...")
            model, _utils = torch.hub.load(
                repo_or_dir='snakers4/silero-vad',
                model='silero_vad',
                force_reload=False,
                onnx=False
            )
            if self.device == "cuda":
                model = model.to(self.device)
        except Exception as e:
            logger.error(f"❌ Failed to load Silero VAD model: {e}")
            raise DetectorError(f"Silero VAD model failed to load: {e}") from e

        self.model = model
        self._torch = torch
        logger.info("✅ Silero VAD model loaded successfully")

    def detect_speech(self, audio_chunk: np.ndarray, sample_rate: int = CAPTURE_SAMPLE_RATE) -> Tuple[bool, float]:
        """
        Detect speech in audio chunk.

        Returns:
            Tuple[bool, float]: (is_speech, confidence)
        """
        if len(audio_chunk) != SILERO_CHUNK_SAMPLES:
            logger.warning(f"Invalid chunk size: {len(audio_chunk)}, expected {SILERO_CHUNK_SAMPLES}")
            return False, 0.0

        try:
            audio_tensor = self._torch.from_numpy(np.ascontiguousarray(audio_chunk, dtype=np.float32))
            if self.device == "cuda":
                audio_tensor = audio_tensor.to(self.device)

            with self._torch.no_grad():
                speech_prob = self.model(audio_tensor, sample_rate).item()
        except Exception as e:
            logger.error(f"VAD detection error: {e}")
            return False, 0.0

        return speech_prob > self.threshold, speech_prob


class SileroSpeechDetector:
    """
    Server-side detector turning a PCM stream into speech start/end events.

    Speech start is only reported once min_speech_duration_ms of speech has
    accumulated, so too-short blips never reach the orchestrator. Speech end
    is reported after silence_timeout_ms of silence, with every buffered
    chunk from the first speech chunk onward.

    Durations are measured in samples rather than wall-clock time, so a burst
    of chunks delivered at once is timed the same as a live stream.
    """

    def __init__(
        self,
        vad,
        *,
        min_speech_duration_ms: int = 250,
        silence_timeout_ms: int = 800,
        sample_rate: int = CAPTURE_SAMPLE_RATE,
        on_speech_start: Optional[Callable[[], object]] = None,
        on_speech_end: Optional[Callable[[np.ndarray], object]] = None,
        error: Optional[BaseException] = None,
    ):
        """
        Args:
            vad: Object with detect_speech(chunk, sample_rate) -> (bool, float), or
                 None when the model failed to load (pass the failure as `error`)
            on_speech_start / on_speech_end: Usually SpeechOrchestrator methods, see bind()
        """
        self.vad = vad
        self.sample_rate = sample_rate
        self.min_speech_samples = int(sample_rate * min_speech_duration_ms / 1000)
        self.silence_timeout_samples = int(sample_rate * silence_timeout_ms / 1000)
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end

        self._listening = False
        self._errored = error
        if vad is None and error is None:
            self._errored = DetectorError("VAD model not loaded")
        self._pending = np.zeros(0, dtype=np.float32)
        self._reset_speech()

    @classmethod
    def from_config(cls, config) -> "SileroSpeechDetector":
        """
        Build from STTRouterConfig.

        A model that fails to load leaves the detector in the errored state
        instead of raising, so the service still starts and reports it.
        """
        try:
            vad = SileroVAD(threshold=config.vad_threshold, device=config.vad_device)
            error = None
        except DetectorError as e:
            logger.error(f"❌ Silero detector unavailable: {e}")
            vad, error = None, e

        return cls(
            vad,
            min_speech_duration_ms=config.vad_min_speech_duration_ms,
            silence_timeout_ms=config.vad_silence_timeout_ms,
            sample_rate=config.sample_rate,
            error=error,
        )

    def bind(self, orchestrator) -> None:
        self.on_speech_start = orchestrator.on_speech_start
        self.on_speech_end = orchestrator.on_speech_end

    # Detector protocol

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def errored(self) -> Optional[BaseException]:
        return self._errored

    def start(self) -> None:
        if self._errored is not None:
            return
        self._listening = True

    def pause(self) -> None:
        self._listening = False
        self._pending = np.zeros(0, dtype=np.float32)
        self._reset_speech()

    # Stream processing

    def _reset_speech(self) -> None:
        self.is_speaking = False
        self.speech_confirmed = False
        self.speech_samples = 0
        self.silence_samples = 0
        self.speech_chunks: List[np.ndarray] = []

    def feed(self, samples: Sequence[float]) -> List[str]:
        """
        Feed float32 samples; complete 512-sample chunks are processed.

        Returns:
            Events emitted while processing ("speech_start", "speech_end", "speech_too_short")
        """
        if not self._listening:
            return []

        self._pending = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32)])
        events: List[str] = []

        while self._listening and len(self._pending) >= SILERO_CHUNK_SAMPLES:
            chunk = self._pending[:SILERO_CHUNK_SAMPLES]
            self._pending = self._pending[SILERO_CHUNK_SAMPLES:]
            event = self._process_chunk(chunk)
            if event:
                events.append(event)

        return events

    def _process_chunk(self, chunk: np.ndarray) -> Optional[str]:
        is_speech, _confidence = self.vad.detect_speech(chunk, self.sample_rate)

        if is_speech:
            if not self.is_speaking:
                self.is_speaking = True
                self.speech_chunks = []
                self.speech_samples = 0
            self.speech_chunks.append(chunk)
            self.speech_samples += self.silence_samples + len(chunk)
            self.silence_samples = 0

            if not self.speech_confirmed and self.speech_samples >= self.min_speech_samples:
                self.speech_confirmed = True
                if self.on_speech_start is not None:
                    self.on_speech_start()
                return "speech_start"
            return None

        if not self.is_speaking:
            return None

        self.speech_chunks.append(chunk)
        self.silence_samples += len(chunk)
        if self.silence_samples < self.silence_timeout_samples:
            return None

        if not self.speech_confirmed:
            logger.debug(f"Speech too short ({self.speech_samples} samples), ignored")
            self._reset_speech()
            return "speech_too_short"

        # Trailing silence is not part of the segment
        kept = len(self.speech_chunks) - self.silence_samples // SILERO_CHUNK_SAMPLES
        segment = np.concatenate(self.speech_chunks[:kept])
        self._reset_speech()
        if self.on_speech_end is not None:
            self.on_speech_end(segment)
        return "speech_end"
