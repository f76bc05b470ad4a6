"""
Voice Activity Detector Tests

SileroSpeechDetector is driven by a fake VAD that calls any chunk with
energy "speech", so no torch or model download is needed.
"""

import numpy as np
import pytest

from stt_router.models import DetectorError
from stt_router.orchestrator_fsm import SpeechOrchestrator, State
from stt_router.vad_detector import (
    SILERO_CHUNK_SAMPLES,
    ExternalDetector,
    SileroSpeechDetector,
    SileroVAD,
)

SPEECH = np.full(SILERO_CHUNK_SAMPLES, 0.5, dtype=np.float32)
SILENCE = np.zeros(SILERO_CHUNK_SAMPLES, dtype=np.float32)


class FakeVAD:
    def detect_speech(self, chunk, sample_rate=16000):
        prob = float(np.abs(chunk).max())
        return prob > 0.1, prob


def _chunks(chunk, count):
    return np.concatenate([chunk] * count)


@pytest.fixture
def events():
    return {"starts": 0, "segments": []}


@pytest.fixture
def silero(events):
    def on_start():
        events["starts"] += 1

    detector = SileroSpeechDetector(
        FakeVAD(),
        min_speech_duration_ms=250,   # 4000 samples -> 8 chunks
        silence_timeout_ms=800,       # 12800 samples -> 25 chunks
        on_speech_start=on_start,
        on_speech_end=events["segments"].append,
    )
    detector.start()
    return detector


@pytest.mark.unit
class TestExternalDetector:

    def test_start_pause(self):
        detector = ExternalDetector()
        assert not detector.listening

        detector.start()
        assert detector.listening

        detector.pause()
        assert not detector.listening

    def test_fail_and_clear(self):
        detector = ExternalDetector()
        detector.start()

        detector.fail(DetectorError("mic denied"))
        assert not detector.listening
        assert str(detector.errored) == "mic denied"

        detector.clear_error()
        assert detector.errored is None


@pytest.mark.unit
class TestSileroSpeechDetector:

    def test_speech_segment(self, silero, events):
        started = silero.feed(_chunks(SPEECH, 10))
        ended = silero.feed(_chunks(SILENCE, 25))

        assert started == ["speech_start"]
        assert ended == ["speech_end"]
        assert events["starts"] == 1
        assert len(events["segments"]) == 1
        assert len(events["segments"][0]) == 10 * SILERO_CHUNK_SAMPLES

    def test_start_reported_after_min_speech(self, silero, events):
        assert silero.feed(_chunks(SPEECH, 7)) == []
        assert events["starts"] == 0

        assert silero.feed(SPEECH) == ["speech_start"]
        assert events["starts"] == 1

    def test_short_blip_ignored(self, silero, events):
        events_out = silero.feed(np.concatenate([_chunks(SPEECH, 3), _chunks(SILENCE, 25)]))

        assert events_out == ["speech_too_short"]
        assert events["starts"] == 0
        assert events["segments"] == []

    def test_short_pause_keeps_segment_open(self, silero, events):
        audio = np.concatenate([
            _chunks(SPEECH, 10),
            _chunks(SILENCE, 5),
            _chunks(SPEECH, 5),
            _chunks(SILENCE, 25),
        ])

        assert silero.feed(audio) == ["speech_start", "speech_end"]
        assert len(events["segments"][0]) == 20 * SILERO_CHUNK_SAMPLES

    def test_partial_chunks_are_buffered(self, silero):
        silero.feed(np.zeros(300, dtype=np.float32))
        assert silero.speech_samples == 0
        assert len(silero._pending) == 300

        silero.feed(np.zeros(212, dtype=np.float32))
        assert len(silero._pending) == 0

    def test_paused_detector_ignores_audio(self, silero, events):
        silero.pause()

        assert silero.feed(_chunks(SPEECH, 10)) == []
        assert events["starts"] == 0

    def test_missing_model_is_errored(self):
        detector = SileroSpeechDetector(None)

        assert isinstance(detector.errored, DetectorError)
        detector.start()
        assert not detector.listening

    def test_from_config_records_load_failure(self, router_config, monkeypatch):
        def fail_load(self):
            raise DetectorError("torch is not installed")

        monkeypatch.setattr(SileroVAD, "_load_model", fail_load)

        detector = SileroSpeechDetector.from_config(router_config)

        assert str(detector.errored) == "torch is not installed"
        assert detector.min_speech_samples == 4000
        assert detector.silence_timeout_samples == 12800


@pytest.mark.integration
@pytest.mark.asyncio
async def test_silero_drives_orchestrator(config_store, registry, consumer):
    detector = SileroSpeechDetector(FakeVAD())
    orchestrator = SpeechOrchestrator(config_store, registry, detector, consumer, log_state_transitions=False)
    detector.bind(orchestrator)

    assert orchestrator.start()
    events = detector.feed(np.concatenate([_chunks(SPEECH, 10), _chunks(SILENCE, 25), _chunks(SPEECH, 10)]))

    # Detector is paused once the segment is dispatched; trailing audio is dropped
    assert events == ["speech_start", "speech_end"]
    assert orchestrator.state is State.SEGMENT_DISPATCHED
    assert not detector.listening

    await orchestrator.join()

    assert consumer.transcripts == ["Hello world."]
    assert orchestrator.state is State.LISTENING
    assert detector.listening
