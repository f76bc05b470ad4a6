"""
STT Router Service Integration Tests

Tests HTTP endpoints and the WebSocket capture stream against the mock
backend. The app lifespan runs inside each TestClient context.

Run with: pytest stt_router/tests/test_service.py -v
"""

import base64
from unittest.mock import AsyncMock

import numpy as np
import pytest
from fastapi.testclient import TestClient

from stt_router.app import app
from stt_router.backends.mock import MockTranscriptionBackend
from stt_router.models import BackendInvocationFailed


def build_float32_audio(duration_seconds=0.5, sample_rate=16000):
    """Base64 float32 LE samples, as a browser Float32Array would send them"""
    t = np.linspace(0, duration_seconds, int(sample_rate * duration_seconds), endpoint=False)
    samples = (0.3 * np.sin(2 * np.pi * 220.0 * t)).astype("<f4")
    return base64.b64encode(samples.tobytes()).decode("ascii")


def receive_until(websocket, msg_type, limit=10):
    """Read messages until one of `msg_type` arrives; returns (match, skipped)."""
    skipped = []
    for _ in range(limit):
        message = websocket.receive_json()
        if message["type"] == msg_type:
            return message, skipped
        skipped.append(message)
    raise AssertionError(f"No '{msg_type}' message within {limit} messages: {skipped}")


@pytest.fixture
def service_env(monkeypatch):
    monkeypatch.setenv("STT_ROUTER_BACKEND", "mock")
    monkeypatch.setenv("STT_ROUTER_MOCK_TRANSCRIPT", " Hello world. [noise] ")
    monkeypatch.setenv("STT_ROUTER_DETECTOR", "external")
    monkeypatch.setenv("STT_ROUTER_AUTOSEND", "true")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def client(service_env):
    """FastAPI test client fixture (lifespan enabled)"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.mark.integration
class TestHTTPEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "stt-router"
        assert data["backend_id"] == "mock"
        assert data["state"] == "idle"

    def test_start_stop(self, client):
        response = client.post("/start")
        assert response.status_code == 200
        assert response.json()["state"] == "listening"
        assert response.json()["listening"] is True

        response = client.post("/stop")
        assert response.status_code == 200
        assert response.json()["state"] == "idle"

    def test_start_refused_without_backend(self, service_env, monkeypatch):
        monkeypatch.setenv("STT_ROUTER_BACKEND", "none")

        with TestClient(app) as client:
            response = client.post("/start")
            health = client.get("/health").json()

        assert response.status_code == 409
        assert response.json()["detail"]["capture_enabled"] is False
        assert health["status"] == "degraded"

    def test_start_refused_with_missing_api_key(self, service_env, monkeypatch):
        monkeypatch.setenv("STT_ROUTER_BACKEND", "whisper_openai")

        with TestClient(app) as client:
            response = client.post("/start")

        assert response.status_code == 409

    def test_status(self, client):
        data = client.get("/status").json()

        assert data["state"] == "idle"
        assert data["busy"] is False
        assert data["autosend"] is True
        assert data["in_flight_segment_id"] is None

    def test_mute_toggle(self, client):
        assert client.post("/mute/toggle").json() == {"muted": True}
        assert client.get("/config/tts_muted").json()["value"] == "true"
        assert client.post("/mute/toggle").json() == {"muted": False}

    def test_config_get_and_put(self, client):
        assert client.get("/config/stt_backend").json() == {"key": "stt_backend", "value": "mock"}

        response = client.put("/config/stt_prompt", json={"value": "Names: Ada"})
        assert response.status_code == 200
        assert client.get("/config/stt_prompt").json()["value"] == "Names: Ada"

    def test_config_unknown_key(self, client):
        assert client.get("/config/nope").status_code == 404
        assert client.put("/config/nope", json={"value": "x"}).status_code == 404

    def test_config_boolean_validation(self, client):
        assert client.put("/config/autosend_from_mic", json={"value": "maybe"}).status_code == 400
        assert client.put("/config/autosend_from_mic", json={"value": "false"}).status_code == 200
        assert client.get("/status").json()["autosend"] is False

    def test_switching_to_disabled_backend_stops_capture(self, client):
        client.post("/start")

        client.put("/config/stt_backend", json={"value": "none"})

        status = client.get("/status").json()
        assert status["state"] == "idle"
        assert status["capture_enabled"] is False

    def test_metrics(self, client):
        data = client.get("/metrics").json()

        assert data["service"] == "stt-router"
        assert "counters" in data["orchestrator"]
        assert "mock" in data["backends"]
        assert data["config"]["stt_backend"] == "mock"


@pytest.mark.integration
class TestCaptureStream:

    def test_transcript_round_trip(self, client):
        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            connected = websocket.receive_json()
            assert connected["type"] == "connected"

            websocket.send_json({"type": "start"})
            assert websocket.receive_json()["state"] == "listening"

            websocket.send_json({"type": "speech_start"})
            ack = websocket.receive_json()
            assert ack == {"type": "ack", "event": "speech_start", "accepted": True}

            websocket.send_json({"type": "speech_end", "audio_base64": build_float32_audio()})
            transcript, others = receive_until(websocket, "transcript")

        assert transcript["text"] == "Hello world."
        assert transcript["autosend"] is True
        end_acks = [m for m in others if m.get("event") == "speech_end"]
        assert all(m["accepted"] and m["segment_id"] == 1 for m in end_acks)

    def test_failure_pushed_to_client(self, client, monkeypatch):
        monkeypatch.setattr(
            MockTranscriptionBackend, "invoke", AsyncMock(side_effect=BackendInvocationFailed("HTTP 503"))
        )
        client.post("/start")

        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "speech_start"})
            websocket.receive_json()
            websocket.send_json({"type": "speech_end", "audio_base64": build_float32_audio()})

            failure, _ = receive_until(websocket, "transcription_failed")

        assert failure["segment_id"] == 1
        assert failure["error_kind"] == "backend_invocation_failed"
        assert client.get("/status").json()["state"] == "listening"

    def test_speech_end_without_start_rejected(self, client):
        client.post("/start")

        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "speech_end", "audio_base64": build_float32_audio()})
            ack = websocket.receive_json()

        assert ack["accepted"] is False
        assert ack["segment_id"] is None

    def test_ping(self, client):
        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"

    def test_invalid_messages(self, client):
        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            websocket.receive_json()

            websocket.send_text("{not json")
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"type": "dance"})
            assert "Unknown message type" in websocket.receive_json()["message"]

            websocket.send_json({"type": "speech_end", "audio_base64": "!!!"})
            assert "Invalid audio_base64" in websocket.receive_json()["message"]

    def test_binary_audio_requires_server_vad(self, client):
        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            websocket.receive_json()
            websocket.send_bytes(np.zeros(1024, dtype="<i2").tobytes())

            message = websocket.receive_json()

        assert message["type"] == "error"
        assert "silero" in message["message"]

    def test_client_vad_error_disables_capture(self, client):
        client.post("/start")

        with client.websocket_connect("/api/v1/capture/stream") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "vad_error", "message": "model failed to load"})
            status = websocket.receive_json()

            assert status["state"] == "idle"
            assert status["errored"] == "model failed to load"
            assert client.post("/start").status_code == 409

            websocket.send_json({"type": "vad_ready"})
            assert websocket.receive_json()["errored"] is None

        assert client.post("/start").status_code == 200
