"""
Transcription Dispatcher Tests

Every dispatch resolves to exactly one TranscriptionResult tagged with its
segment id, whatever the backend does.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from stt_router.backend_registry import BackendKind, BackendRegistry
from stt_router.backends.mock import MockTranscriptionBackend
from stt_router.dispatcher import TranscriptionDispatcher
from stt_router.models import AudioSegment, ErrorKind
from stt_router.segment_encoder import FLOAT32_RAW, PCM16_WAV, decode


def _segment(segment_id, samples, backend_id="mock"):
    return AudioSegment(segment_id=segment_id, samples=samples, backend_id=backend_id)


@pytest.mark.unit
class TestDispatchSuccess:

    @pytest.mark.asyncio
    async def test_success_tagged_with_segment_id(self, registry, speech_samples):
        dispatcher = TranscriptionDispatcher(registry)

        result = await dispatcher.dispatch(_segment(7, speech_samples))

        assert result.ok
        assert result.segment_id == 7
        assert result.backend_id == "mock"
        assert result.text == "Hello world."

    @pytest.mark.asyncio
    async def test_payload_matches_backend_format(self, speech_samples):
        backend = MockTranscriptionBackend("ok")
        registry = BackendRegistry()
        registry.register_instance("whispercpp", BackendKind.NATIVE_ENGINE, PCM16_WAV, True, backend)

        await TranscriptionDispatcher(registry).dispatch(_segment(1, speech_samples, "whispercpp"))

        payload, _prompt = backend.calls[0]
        assert payload[:4] == b"RIFF"
        assert decode(payload, PCM16_WAV).dtype == np.int16

    @pytest.mark.asyncio
    async def test_prompt_passed_when_accepted(self, registry, mock_backend, speech_samples):
        await TranscriptionDispatcher(registry).dispatch(_segment(1, speech_samples), prompt="Names: Ada")

        assert mock_backend.calls[0][1] == "Names: Ada"

    @pytest.mark.asyncio
    async def test_prompt_withheld_when_not_accepted(self, mock_backend, speech_samples):
        registry = BackendRegistry()
        registry.register_instance("mock", BackendKind.LOCAL, FLOAT32_RAW, False, mock_backend)

        await TranscriptionDispatcher(registry).dispatch(_segment(1, speech_samples), prompt="Names: Ada")

        assert mock_backend.calls[0][1] is None


@pytest.mark.unit
class TestDispatchFailures:

    @pytest.mark.asyncio
    async def test_backend_unavailable_skips_encoding(self, speech_samples, monkeypatch):
        encode_spy = MagicMock()
        monkeypatch.setattr("stt_router.dispatcher.encode", encode_spy)

        result = await TranscriptionDispatcher(BackendRegistry()).dispatch(_segment(3, speech_samples, "none"))

        assert not result.ok
        assert result.error_kind is ErrorKind.BACKEND_UNAVAILABLE
        assert result.segment_id == 3
        encode_spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_segment_is_encoding_failure(self, registry, mock_backend):
        result = await TranscriptionDispatcher(registry).dispatch(_segment(4, np.zeros(0, dtype=np.float32)))

        assert result.error_kind is ErrorKind.ENCODING_FAILED
        assert mock_backend.calls == []

    @pytest.mark.asyncio
    async def test_backend_exception_preserves_reason(self, speech_samples):
        backend = MagicMock()
        backend.invoke = AsyncMock(side_effect=RuntimeError("HTTP 503 from upstream"))
        backend.validate_config.return_value = (True, None)
        registry = BackendRegistry()
        registry.register_instance("flaky", BackendKind.REMOTE, FLOAT32_RAW, True, backend)

        result = await TranscriptionDispatcher(registry).dispatch(_segment(5, speech_samples, "flaky"))

        assert result.error_kind is ErrorKind.BACKEND_INVOCATION_FAILED
        assert result.error_detail == "HTTP 503 from upstream"

    @pytest.mark.asyncio
    async def test_timeout_is_invocation_failure(self, speech_samples):
        registry = BackendRegistry()
        registry.register_instance("slow", BackendKind.REMOTE, FLOAT32_RAW, True, MockTranscriptionBackend(delay_s=1.0))

        result = await TranscriptionDispatcher(registry, timeout_s=0.05).dispatch(_segment(6, speech_samples, "slow"))

        assert result.error_kind is ErrorKind.BACKEND_INVOCATION_FAILED
        assert "timed out" in result.error_detail

    @pytest.mark.asyncio
    async def test_stats_count_outcomes(self, registry, speech_samples):
        dispatcher = TranscriptionDispatcher(registry)

        await dispatcher.dispatch(_segment(1, speech_samples))
        await dispatcher.dispatch(_segment(2, speech_samples, "none"))

        stats = dispatcher.get_stats()
        assert stats["dispatched"] == 2
        assert stats["succeeded"] == 1
        assert stats["failed"]["backend_unavailable"] == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_out_of_order_completion_keeps_attribution(speech_samples):
    slow = MockTranscriptionBackend("first", delay_s=0.1)
    fast = MockTranscriptionBackend("second")
    registry = BackendRegistry()
    registry.register_instance("slow", BackendKind.LOCAL, FLOAT32_RAW, True, slow)
    registry.register_instance("fast", BackendKind.LOCAL, FLOAT32_RAW, True, fast)
    dispatcher = TranscriptionDispatcher(registry)

    first = dispatcher.dispatch(_segment(1, speech_samples, "slow"))
    second = dispatcher.dispatch(_segment(2, speech_samples, "fast"))
    done, _ = await asyncio.wait({first, second}, return_when=asyncio.FIRST_COMPLETED)

    assert done == {second}
    assert second.result().segment_id == 2
    assert second.result().text == "second"
    assert (await first).segment_id == 1
    assert first.result().text == "first"
