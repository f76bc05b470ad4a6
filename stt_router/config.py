"""
Configuration for STT Router Microservice

Loaded from environment variables with STT_ROUTER_* prefix.
No load_dotenv() calls - follows microservice pattern.

Two layers:
    STTRouterConfig: static service settings (models, endpoints, VAD windows)
    ConfigStore: mutable string key/value boundary read by the orchestrator
                 (selected backend, mute flag, autosend flag, priming prompt)
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# ConfigStore keys
KEY_STT_BACKEND = "stt_backend"
KEY_TTS_MUTED = "tts_muted"
KEY_AUTOSEND = "autosend_from_mic"
KEY_STT_PROMPT = "stt_prompt"

VALID_BACKENDS = ["none", "whisper_local", "whisper_openai", "whispercpp", "mock"]
VALID_DETECTORS = ["external", "silero"]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class STTRouterConfig:
    """
    Configuration for the STT router microservice.

    Backends:
        - whisper_local: faster-whisper in-process (raw float32 samples)
        - whisper_openai: OpenAI-compatible transcription API (float32 WAV)
        - whispercpp: whisper.cpp server (16-bit PCM WAV)
        - mock: fixed transcript (testing)
        - none: capture disabled
    """

    # Audio settings
    sample_rate: int = 16000  # Capture rate shared by VAD and all backends
    channels: int = 1

    # Session defaults (seed the ConfigStore)
    stt_backend: str = "whisper_local"
    stt_prompt: Optional[str] = None
    autosend_from_mic: bool = True
    tts_muted: bool = False

    # Detector settings
    detector: str = "external"  # external (client-side VAD) or silero (server-side)
    vad_threshold: float = 0.5
    vad_min_speech_duration_ms: int = 250
    vad_silence_timeout_ms: int = 800
    vad_device: str = "cpu"

    # faster-whisper (whisper_local)
    whisper_model_size: str = "base.en"
    whisper_device: str = "cpu"
    whisper_compute_type: str = "int8"
    whisper_language: Optional[str] = "en"
    whisper_beam_size: int = 5

    # OpenAI-compatible API (whisper_openai)
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "whisper-1"

    # whisper.cpp server (whispercpp)
    whispercpp_url: str = "http://127.0.0.1:8080/inference"

    # Mock backend
    mock_transcript: str = "Mock transcription."

    # Dispatch settings
    backend_timeout_s: float = 45.0

    # Service settings
    host: str = "0.0.0.0"
    port: int = 8010

    # Verbosity control
    verbose: bool = False
    log_vad_events: bool = True
    log_state_transitions: bool = True

    @staticmethod
    def from_env() -> 'STTRouterConfig':
        """
        Load configuration from environment variables.

        Environment variables use STT_ROUTER_* prefix, except OPENAI_API_KEY
        which is shared with other tools.

        Returns:
            STTRouterConfig: Configuration instance loaded from environment
        """
        language = os.getenv("STT_ROUTER_WHISPER_LANGUAGE", "en")

        return STTRouterConfig(
            # Audio settings
            sample_rate=int(os.getenv("STT_ROUTER_SAMPLE_RATE", "16000")),
            channels=int(os.getenv("STT_ROUTER_CHANNELS", "1")),

            # Session defaults
            stt_backend=os.getenv("STT_ROUTER_BACKEND", "whisper_local"),
            stt_prompt=os.getenv("STT_ROUTER_PROMPT") or None,
            autosend_from_mic=_env_bool("STT_ROUTER_AUTOSEND", "true"),
            tts_muted=_env_bool("STT_ROUTER_TTS_MUTED", "false"),

            # Detector settings
            detector=os.getenv("STT_ROUTER_DETECTOR", "external"),
            vad_threshold=float(os.getenv("STT_ROUTER_VAD_THRESHOLD", "0.5")),
            vad_min_speech_duration_ms=int(os.getenv("STT_ROUTER_VAD_MIN_SPEECH_MS", "250")),
            vad_silence_timeout_ms=int(os.getenv("STT_ROUTER_VAD_SILENCE_TIMEOUT_MS", "800")),
            vad_device=os.getenv("STT_ROUTER_VAD_DEVICE", "cpu"),

            # faster-whisper
            whisper_model_size=os.getenv("STT_ROUTER_WHISPER_MODEL_SIZE", "base.en"),
            whisper_device=os.getenv("STT_ROUTER_WHISPER_DEVICE", "cpu"),
            whisper_compute_type=os.getenv("STT_ROUTER_WHISPER_COMPUTE_TYPE", "int8"),
            whisper_language=language or None,
            whisper_beam_size=int(os.getenv("STT_ROUTER_WHISPER_BEAM_SIZE", "5")),

            # OpenAI-compatible API
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("STT_ROUTER_OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_model=os.getenv("STT_ROUTER_OPENAI_MODEL", "whisper-1"),

            # whisper.cpp
            whispercpp_url=os.getenv("STT_ROUTER_WHISPERCPP_URL", "http://127.0.0.1:8080/inference"),

            # Mock
            mock_transcript=os.getenv("STT_ROUTER_MOCK_TRANSCRIPT", "Mock transcription."),

            # Dispatch
            backend_timeout_s=float(os.getenv("STT_ROUTER_BACKEND_TIMEOUT_S", "45.0")),

            # Service
            host=os.getenv("STT_ROUTER_HOST", "0.0.0.0"),
            port=int(os.getenv("STT_ROUTER_PORT", "8010")),

            # Verbosity
            verbose=_env_bool("STT_ROUTER_VERBOSE", "false"),
            log_vad_events=_env_bool("STT_ROUTER_LOG_VAD_EVENTS", "true"),
            log_state_transitions=_env_bool("STT_ROUTER_LOG_STATE_TRANSITIONS", "true"),
        )

    def __post_init__(self):
        """Validate and normalize configuration."""
        if self.sample_rate != 16000:
            logger.warning(f"Unsupported sample_rate={self.sample_rate}, using 16000 (VAD and Whisper require 16kHz)")
            self.sample_rate = 16000

        if self.channels != 1:
            logger.warning(f"Unsupported channels={self.channels}, using mono")
            self.channels = 1

        if self.stt_backend not in VALID_BACKENDS:
            logger.warning(f"Unknown stt_backend={self.stt_backend}, capture will stay disabled until a valid backend is set")

        if self.detector not in VALID_DETECTORS:
            logger.warning(f"Invalid detector={self.detector}, using 'external'")
            self.detector = "external"

        if not (0.0 <= self.vad_threshold <= 1.0):
            logger.warning(f"Invalid vad_threshold={self.vad_threshold}, using default 0.5")
            self.vad_threshold = 0.5

        if self.whisper_device not in ["cuda", "cpu", "auto"]:
            logger.warning(f"Invalid whisper_device={self.whisper_device}, using 'cpu'")
            self.whisper_device = "cpu"

        valid_compute_types = ["float16", "float32", "int8", "int8_float16"]
        if self.whisper_compute_type not in valid_compute_types:
            logger.warning(f"Invalid whisper_compute_type={self.whisper_compute_type}, using 'int8'")
            self.whisper_compute_type = "int8"

        if self.backend_timeout_s <= 0:
            logger.warning(f"Invalid backend_timeout_s={self.backend_timeout_s}, using default 45.0")
            self.backend_timeout_s = 45.0

        if self.verbose:
            logger.info(
                f"STTRouterConfig loaded: backend={self.stt_backend}, "
                f"detector={self.detector}, whisper={self.whisper_model_size}@{self.whisper_device}"
            )


class ConfigStore:
    """
    String key/value configuration boundary.

    Values are plain strings ("true"/"false" for flags) so any external
    persistence can back it. Seeded from STTRouterConfig.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    @classmethod
    def from_config(cls, config: STTRouterConfig) -> "ConfigStore":
        return cls({
            KEY_STT_BACKEND: config.stt_backend,
            KEY_TTS_MUTED: "true" if config.tts_muted else "false",
            KEY_AUTOSEND: "true" if config.autosend_from_mic else "false",
            KEY_STT_PROMPT: config.stt_prompt or "",
        })

    def get(self, key: str) -> str:
        return self._values.get(key, "")

    def set(self, key: str, value: str) -> None:
        old = self._values.get(key)
        self._values[key] = str(value)
        if old != value:
            logger.info(f"⚙️ Config updated: {key}={value!r}")

    def get_bool(self, key: str) -> bool:
        return self.get(key) == "true"

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)
