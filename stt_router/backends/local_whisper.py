"""
Local Faster Whisper Backend

Runs faster-whisper in-process on the raw float32 samples of a segment.
No container conversion: the registry hands this backend little-endian
float32 bytes which are viewed back into a numpy array.

Inference is CPU/GPU bound, so it runs in a worker thread to keep the
orchestrator's event loop free.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Tuple

import numpy as np

from ..config import STTRouterConfig
from ..models import BackendInvocationFailed
from .base import BackendStats

logger = logging.getLogger(__name__)

# Common hallucination patterns to filter out per segment
HALLUCINATION_PATTERNS = [
    "the following is a conversation",
    "thank you for watching",
    "thanks for watching",
    "please subscribe",
    "like and subscribe",
]

NO_SPEECH_THRESHOLD = 0.5


class LocalWhisperBackend:
    """
    faster-whisper transcription on the local machine.

    The model is loaded on first use (in a worker thread) and kept for the
    lifetime of the backend.
    """

    def __init__(self, config: STTRouterConfig, model: Optional[Any] = None):
        """
        Args:
            config: STTRouterConfig (whisper_* settings)
            model: Preloaded WhisperModel-compatible object (tests, warm pools)
        """
        self.config = config
        self.model = model
        self._load_lock = asyncio.Lock()
        self._stats = BackendStats()

        logger.info(
            f"🎙️ Local Whisper backend configured | "
            f"Model: {config.whisper_model_size} | "
            f"Device: {config.whisper_device} | "
            f"Compute: {config.whisper_compute_type}"
        )

    def _load_model(self):
        """Load the faster-whisper model (blocking)."""
        from faster_whisper import WhisperModel

        logger.info(f"📥 Loading Faster Whisper model ({self.config.whisper_model_size})...")
        try:
            model = WhisperModel(
                model_size_or_path=self.config.whisper_model_size,
                device=self.config.whisper_device,
                compute_type=self.config.whisper_compute_type,
            )
        except (SystemError, OSError, RuntimeError) as e:
            if self.config.whisper_device == "cpu":
                raise
            logger.warning(f"⚠️ GPU load failed ({e}) - falling back to CPU")
            model = WhisperModel(
                model_size_or_path=self.config.whisper_model_size,
                device="cpu",
                compute_type="int8",
            )
        logger.info("✅ Faster Whisper model loaded")
        return model

    async def _ensure_model(self):
        if self.model is not None:
            return self.model
        async with self._load_lock:
            if self.model is None:
                self.model = await asyncio.to_thread(self._load_model)
        return self.model

    def _transcribe_blocking(self, model: Any, audio: np.ndarray, prompt: Optional[str]) -> str:
        segments, _info = model.transcribe(
            audio,
            language=self.config.whisper_language,
            beam_size=self.config.whisper_beam_size,
            vad_filter=False,
            initial_prompt=prompt or None,
        )

        parts = []
        for segment in segments:
            text = segment.text.strip() if segment.text else ""
            no_speech = getattr(segment, 'no_speech_prob', 0.0)

            if no_speech > NO_SPEECH_THRESHOLD:
                logger.debug(f"   ⏭️ Skipped (no_speech={no_speech:.2f})")
                continue

            if any(pattern in text.lower() for pattern in HALLUCINATION_PATTERNS):
                logger.debug(f"   ⏭️ Skipped hallucination: '{text[:50]}'")
                continue

            if text:
                parts.append(text)

        return " ".join(parts)

    async def invoke(self, audio: bytes, prompt: Optional[str] = None) -> str:
        samples = np.frombuffer(audio, dtype='<f4').astype(np.float32)
        started = time.perf_counter()

        try:
            model = await self._ensure_model()
            text = await asyncio.to_thread(self._transcribe_blocking, model, samples, prompt)
        except Exception as e:
            self._stats.record_failure(str(e))
            logger.error(f"❌ Local Whisper transcription failed: {e}")
            raise BackendInvocationFailed(f"whisper_local: {e}") from e

        latency_ms = self._stats.record_success(started)
        if self.config.verbose:
            logger.debug(f"Local Whisper: '{text[:50]}' | {latency_ms:.0f}ms")
        return text

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        if not self.config.whisper_model_size:
            return False, "whisper_model_size is empty"
        return True, None

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.as_dict()
        stats["model_loaded"] = self.model is not None
        stats["model_size"] = self.config.whisper_model_size
        return stats

    async def aclose(self) -> None:
        self.model = None
