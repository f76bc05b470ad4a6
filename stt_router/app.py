"""
STT Router Microservice FastAPI Application

Routes captured speech segments to one of several transcription backends
and pushes normalized transcripts back to the client.

Endpoints:
    WebSocket /api/v1/capture/stream - speech events / PCM audio in, transcripts out
    GET  /health        - Health check
    GET  /status        - Orchestrator status snapshot
    POST /start         - Start listening
    POST /stop          - Stop listening (pending result is discarded)
    POST /mute/toggle   - Flip the tts_muted flag
    GET  /config/{key}  - Read a session config value
    PUT  /config/{key}  - Write a session config value
    GET  /metrics       - Service metrics
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .backend_registry import BackendRegistry
from .config import (
    ConfigStore,
    STTRouterConfig,
    KEY_AUTOSEND,
    KEY_STT_BACKEND,
    KEY_TTS_MUTED,
)
from .models import DetectorError, ErrorKind
from .orchestrator_fsm import SpeechOrchestrator, State
from .utils import float32_from_base64, pcm16_to_float32, validate_audio_chunk
from .vad_detector import ExternalDetector, SileroSpeechDetector

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BOOLEAN_KEYS = (KEY_TTS_MUTED, KEY_AUTOSEND)

# Global state
config: Optional[STTRouterConfig] = None
config_store: Optional[ConfigStore] = None
registry: Optional[BackendRegistry] = None
detector = None
orchestrator: Optional[SpeechOrchestrator] = None
active_connections: Set[WebSocket] = set()
app_start_time: float = time.time()


class WebSocketBroadcaster:
    """TranscriptConsumer pushing results to every connected client."""

    def __init__(self, store: ConfigStore):
        self.store = store

    async def _broadcast(self, message: Dict[str, Any]) -> None:
        for websocket in list(active_connections):
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(f"⚠️ Dropping client after send failure: {e}")
                active_connections.discard(websocket)

    async def on_transcript(self, text: str) -> None:
        await self._broadcast({
            "type": "transcript",
            "text": text,
            "autosend": self.store.get_bool(KEY_AUTOSEND),
            "timestamp": time.time(),
        })

    async def on_transcription_failed(self, segment_id: int, error_kind: ErrorKind) -> None:
        await self._broadcast({
            "type": "transcription_failed",
            "segment_id": segment_id,
            "error_kind": error_kind.value,
            "timestamp": time.time(),
        })


class ConfigUpdate(BaseModel):
    value: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for application startup/shutdown"""
    global config, config_store, registry, detector, orchestrator

    logger.info("=" * 70)
    logger.info("🚀 Starting STT Router Microservice")
    logger.info("=" * 70)

    config = STTRouterConfig.from_env()
    config_store = ConfigStore.from_config(config)
    logger.info(f"📋 Configuration loaded | Backend: {config.stt_backend} | Detector: {config.detector}")

    registry = BackendRegistry.from_config(config)

    if config.detector == "silero":
        detector = SileroSpeechDetector.from_config(config)
    else:
        detector = ExternalDetector()

    orchestrator = SpeechOrchestrator(
        config_store,
        registry,
        detector,
        WebSocketBroadcaster(config_store),
        backend_timeout_s=config.backend_timeout_s,
        log_state_transitions=config.log_state_transitions,
    )
    if isinstance(detector, SileroSpeechDetector):
        detector.bind(orchestrator)

    logger.info("=" * 70)
    logger.info("✅ STT Router Microservice Ready")
    logger.info("=" * 70)

    yield

    logger.info("🛑 Shutting down STT Router microservice...")
    orchestrator.stop()
    await registry.aclose()
    active_connections.clear()
    logger.info("✅ STT Router microservice stopped")


app = FastAPI(
    title="STT Router Service",
    description="Speech segment orchestration across local, remote and native Whisper backends",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_orchestrator() -> SpeechOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return orchestrator


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Degraded when the detector has errored or the selected backend is unavailable.
    """
    if orchestrator is None:
        return {"status": "starting", "service": "stt-router"}

    status = orchestrator.status()
    return {
        "status": "healthy" if status.capture_enabled else "degraded",
        "service": "stt-router",
        "uptime_seconds": time.time() - app_start_time,
        "state": status.state,
        "backend_id": status.backend_id,
        "detector_error": status.errored,
        "active_connections": len(active_connections),
    }


@app.get("/status")
async def get_status():
    return _require_orchestrator().status().to_dict()


@app.post("/start")
async def start_listening():
    fsm = _require_orchestrator()
    if not fsm.start():
        raise HTTPException(status_code=409, detail=fsm.status().to_dict())
    return fsm.status().to_dict()


@app.post("/stop")
async def stop_listening():
    fsm = _require_orchestrator()
    fsm.stop()
    return fsm.status().to_dict()


@app.post("/mute/toggle")
async def toggle_mute():
    muted = _require_orchestrator().toggle_mute()
    return {"muted": muted}


@app.get("/config/{key}")
async def get_config_value(key: str):
    _require_orchestrator()
    values = config_store.as_dict()
    if key not in values:
        raise HTTPException(status_code=404, detail=f"Unknown config key: {key}")
    return {"key": key, "value": values[key]}


@app.put("/config/{key}")
async def set_config_value(key: str, update: ConfigUpdate):
    fsm = _require_orchestrator()
    if key not in config_store.as_dict():
        raise HTTPException(status_code=404, detail=f"Unknown config key: {key}")
    if key in BOOLEAN_KEYS and update.value not in ("true", "false"):
        raise HTTPException(status_code=400, detail=f"{key} must be 'true' or 'false'")

    config_store.set(key, update.value)

    # Switching to an unavailable backend closes capture
    if key == KEY_STT_BACKEND and fsm.state is not State.IDLE and not registry.capture_enabled(update.value):
        logger.warning(f"🚫 Backend '{update.value}' unavailable, stopping capture")
        fsm.stop()

    return {"key": key, "value": config_store.get(key)}


@app.get("/metrics")
async def get_metrics():
    fsm = _require_orchestrator()
    return {
        "service": "stt-router",
        "uptime_seconds": time.time() - app_start_time,
        "orchestrator": fsm.get_stats(),
        "backends": registry.get_stats(),
        "config": config_store.as_dict(),
        "detector": config.detector,
    }


async def _handle_command(websocket: WebSocket, fsm: SpeechOrchestrator, command: Dict[str, Any]) -> None:
    msg_type = command.get("type")

    if msg_type == "ping":
        await websocket.send_json({"type": "pong", "timestamp": time.time()})

    elif msg_type == "speech_start":
        accepted = fsm.on_speech_start()
        await websocket.send_json({"type": "ack", "event": "speech_start", "accepted": accepted})

    elif msg_type == "speech_end":
        try:
            samples = float32_from_base64(command.get("audio_base64", ""))
        except ValueError as e:
            await websocket.send_json({"type": "error", "message": f"Invalid audio_base64: {e}"})
            return
        segment_id = fsm.on_speech_end(samples)
        await websocket.send_json({
            "type": "ack",
            "event": "speech_end",
            "accepted": segment_id is not None,
            "segment_id": segment_id,
        })

    elif msg_type == "vad_error":
        error = DetectorError(command.get("message", "client VAD error"))
        if isinstance(detector, ExternalDetector):
            detector.fail(error)
        fsm.on_detector_error(error)
        await websocket.send_json({"type": "status", **fsm.status().to_dict()})

    elif msg_type == "vad_ready":
        if isinstance(detector, ExternalDetector):
            detector.clear_error()
        await websocket.send_json({"type": "status", **fsm.status().to_dict()})

    elif msg_type == "start":
        fsm.start()
        await websocket.send_json({"type": "status", **fsm.status().to_dict()})

    elif msg_type == "stop":
        fsm.stop()
        await websocket.send_json({"type": "status", **fsm.status().to_dict()})

    else:
        await websocket.send_json({"type": "error", "message": f"Unknown message type: {msg_type}"})


async def _handle_audio(websocket: WebSocket, audio_data: bytes) -> None:
    if not isinstance(detector, SileroSpeechDetector):
        await websocket.send_json({"type": "error", "message": "Binary audio requires STT_ROUTER_DETECTOR=silero"})
        return

    validation = validate_audio_chunk(audio_data)
    if not validation["valid"]:
        await websocket.send_json({"type": "error", "message": "; ".join(validation["errors"])})
        return

    events = detector.feed(pcm16_to_float32(audio_data))
    if config.log_vad_events:
        for event in events:
            logger.info(f"🎙️ VAD event: {event}")


@app.websocket("/api/v1/capture/stream")
async def capture_stream(websocket: WebSocket):
    """
    WebSocket endpoint for speech capture.

    Client → server:
        {"type": "speech_start"}
        {"type": "speech_end", "audio_base64": <float32 LE samples>}
        {"type": "vad_error", "message": ...} / {"type": "vad_ready"}
        {"type": "start"} / {"type": "stop"} / {"type": "ping"}
        binary 16-bit PCM chunks (server-side VAD mode)

    Server → client:
        {"type": "transcript", "text", "autosend"}
        {"type": "transcription_failed", "segment_id", "error_kind"}
        {"type": "ack" | "status" | "pong" | "error", ...}
    """
    await websocket.accept()
    fsm = orchestrator
    if fsm is None:
        await websocket.close(code=1013)
        return

    active_connections.add(websocket)
    logger.info(f"🔌 WebSocket client connected: {websocket.client}")
    await websocket.send_json({"type": "connected", **fsm.status().to_dict()})

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                await _handle_audio(websocket, message["bytes"])
            elif message.get("text") is not None:
                try:
                    command = json.loads(message["text"])
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                    continue
                await _handle_command(websocket, fsm, command)
    except WebSocketDisconnect:
        pass
    finally:
        active_connections.discard(websocket)
        logger.info(f"🔌 WebSocket client disconnected: {websocket.client}")
