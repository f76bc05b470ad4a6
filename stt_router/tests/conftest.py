"""
pytest Configuration and Fixtures

Provides reusable fixtures for STT router testing:
    - router_config: STTRouterConfig with the mock backend
    - config_store: ConfigStore seeded from router_config
    - mock_backend: MockTranscriptionBackend instance
    - registry: BackendRegistry with the mock backend registered
    - detector: ExternalDetector (client-side VAD stand-in)
    - consumer: Recording TranscriptConsumer
    - orchestrator: SpeechOrchestrator wired to all of the above
    - speech_samples: 1 second of 16kHz float32 audio
"""

import numpy as np
import pytest

from stt_router.backend_registry import BackendKind, BackendRegistry
from stt_router.backends.mock import MockTranscriptionBackend
from stt_router.config import ConfigStore, STTRouterConfig
from stt_router.orchestrator_fsm import SpeechOrchestrator
from stt_router.segment_encoder import FLOAT32_RAW
from stt_router.vad_detector import ExternalDetector


class RecordingConsumer:
    """Collects every callback the orchestrator makes."""

    def __init__(self):
        self.transcripts = []
        self.failures = []

    def on_transcript(self, text):
        self.transcripts.append(text)

    def on_transcription_failed(self, segment_id, error_kind):
        self.failures.append((segment_id, error_kind))


@pytest.fixture
def router_config():
    """
    STTRouterConfig with mock backend and test settings.

    Uses mock backend to avoid requiring a model or API key during testing.
    """
    return STTRouterConfig(
        stt_backend="mock",
        stt_prompt=None,
        autosend_from_mic=True,
        tts_muted=False,
        detector="external",
        openai_api_key=None,
        mock_transcript="Hello world.",
        backend_timeout_s=5.0,
        log_state_transitions=False,
    )


@pytest.fixture
def config_store(router_config):
    return ConfigStore.from_config(router_config)


@pytest.fixture
def mock_backend():
    return MockTranscriptionBackend("Hello world.")


@pytest.fixture
def registry(mock_backend):
    registry = BackendRegistry()
    registry.register_instance("mock", BackendKind.LOCAL, FLOAT32_RAW, True, mock_backend)
    return registry


@pytest.fixture
def detector():
    return ExternalDetector()


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def orchestrator(config_store, registry, detector, consumer):
    return SpeechOrchestrator(
        config_store,
        registry,
        detector,
        consumer,
        session_id="test",
        backend_timeout_s=5.0,
        log_state_transitions=False,
    )


@pytest.fixture
def speech_samples():
    """
    1 second of 16kHz float32 audio (440Hz sine at half scale).
    """
    sample_rate = 16000
    t = np.linspace(0, 1.0, sample_rate, endpoint=False)
    return (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
